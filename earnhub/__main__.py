import uvicorn

from .config import get_settings


def main():
    settings = get_settings()
    uvicorn.run("earnhub.api:app", host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    main()
