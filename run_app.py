import uvicorn

from geoip_api.config import get_settings


def main() -> None:
    """Run the GeoIP API with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "geoip_api.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
