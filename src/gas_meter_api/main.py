import uvicorn

from .settings import get_settings


def main():
    """Run the gas-meter API server."""
    settings = get_settings()

    uvicorn.run(
        "gas_meter_api.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
