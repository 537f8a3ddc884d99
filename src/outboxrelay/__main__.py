"""
Process entry point: ``python -m outboxrelay`` or ``outbox-relay``.

Reads ``RelaySettings`` from the environment, runs the relay until SIGTERM or
SIGINT, and exits non-zero when configuration or startup fails.
"""

import asyncio
import logging
import sys

from pydantic import ValidationError

from outboxrelay.config import RelaySettings
from outboxrelay.exceptions import ConfigurationError
from outboxrelay.relay import OutboxRelay

logger = logging.getLogger("outboxrelay")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def _run(settings: RelaySettings) -> None:
    relay = OutboxRelay.from_settings(settings)
    await relay.run()


def main() -> int:
    try:
        settings = RelaySettings()
    except ValidationError as e:
        configure_logging("INFO")
        logger.error("Invalid relay settings", extra={"error": str(e)})
        return 1

    configure_logging(settings.log_level)

    try:
        asyncio.run(_run(settings))
    except ConfigurationError as e:
        logger.error("Outbox relay configuration error", extra={"error": str(e)})
        return 1
    except KeyboardInterrupt:
        logger.info("Outbox relay interrupted")
    except Exception as e:
        logger.error(
            "Outbox relay failed",
            extra={"error": str(e)},
            exc_info=True,
        )
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
