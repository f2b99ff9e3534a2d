import uvicorn

from .config import Settings


def main() -> None:
    settings = Settings.load()
    uvicorn.run("ffedit.main:app", host=settings.HOST, port=settings.PORT, log_level="info")


if __name__ == "__main__":
    main()
