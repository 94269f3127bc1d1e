# ==============================================================================
# FILE: monitor.py
# PURPOSE: Main entry point for the application.
# ==============================================================================
import click
import uvicorn

from . import config
from .config import CONNECTION_REFRESH_OPTIONS, Settings
from .core.telemetry import TelemetryService
from .logging_config import setup_logging
from .web.api import create_app


@click.command()
@click.option("--api-base", default=config.API_BASE, show_default=True, help="Base URL of the core's REST API.")
@click.option("--access-key", default=config.ACCESS_KEY, help="Access key appended to stream URLs.")
@click.option("--refresh", type=click.Choice([str(v) for v in CONNECTION_REFRESH_OPTIONS]),
              default=str(config.REFRESH_INTERVAL), show_default=True, help="Push interval in seconds.")
@click.option("--host", default=config.HOST, show_default=True)
@click.option("--port", type=int, default=config.PORT, show_default=True)
@click.option("--log-level", default=config.LOG_LEVEL, show_default=True)
@click.option("--page", type=click.Choice(["connections", "dashboard"]), default="connections",
              show_default=True, help="Console page the pipeline starts on.")
def main(api_base, access_key, refresh, host, port, log_level, page):
    """Live connection console for a proxy core's telemetry stream."""
    setup_logging(log_level)
    settings = Settings(api_base=api_base, access_key=access_key, refresh_interval=int(refresh),
                        host=host, port=port, log_level=log_level)
    service = TelemetryService(settings)
    service.set_page(page)
    app = create_app(service)

    print("\n--- connscope ---")
    print(f"Telemetry source: {settings.api_base} (every {settings.refresh_interval}s)")
    print(f"==> Open your client at: http://{settings.host}:{settings.port}/api/connections <==")
    print("---------------------------------")

    try:
        uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    finally:
        print("Monitoring stopped.")


if __name__ == "__main__":
    main()
