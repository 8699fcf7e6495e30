import argparse
import asyncio
import signal
import sys

from loguru import logger
from pydantic import ValidationError

from queue_to_bigquery.app.composition import create_pipeline_dependencies
from queue_to_bigquery.app.config.settings import Settings
from queue_to_bigquery.app.core import SERVICE_NAME, USER_AGENT
from queue_to_bigquery.app.core.logging import configure_logging
from queue_to_bigquery.app.domain.errors import AuthError, StartupError


def _log(event: str, **kwargs) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


async def run_pipeline(settings: Settings) -> None:
    deps = create_pipeline_dependencies(settings)
    try:
        await deps.connect()
        supervisor = deps.supervisor

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, supervisor.request_shutdown)
            except NotImplementedError:
                pass

        await supervisor.run()
    finally:
        await deps.close()
        _log("pipeline_stopped")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description="Drain a message topic into a BigQuery table. Configured through environment variables.",
    )
    parser.add_argument("--version", action="version", version=USER_AGENT)
    parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as e:
        configure_logging()
        logger.error("invalid configuration: {}", e)
        return 1

    configure_logging(settings.log_level, json=settings.log_json)
    try:
        asyncio.run(run_pipeline(settings))
    except KeyboardInterrupt:
        _log("pipeline_interrupted")
    except StartupError as e:
        logger.error("startup failed: {}", e)
        return 1
    except AuthError as e:
        logger.error("warehouse authentication failed: {}", e)
        return 1
    except Exception as e:
        logger.exception("pipeline failed: {}", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
