from mangum import Mangum

from earnhub.api import app

handler = Mangum(app)
