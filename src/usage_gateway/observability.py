"""Observability setup - Logfire configuration.

We use logfire.info/warn/error/debug directly instead of
Python's logging module. This ensures all logs are properly
associated with the current request span.
"""

import logfire

from .config import GatewayConfig


def configure(
    service_name: str = "usage_gateway",
    debug: bool = False,
    log_level: str = "debug",
) -> None:
    """Configure Logfire for observability.

    Args:
        service_name: Name to identify this service in traces.
        debug: If True, also log to console. Default False (quiet mode).
        log_level: Lowest level shown on the console.
    """
    logfire.configure(
        service_name=service_name,
        distributed_tracing=True,
        scrubbing=False,  # Too aggressive, redacts normal words
        send_to_logfire="if-token-present",
        console=logfire.ConsoleOptions(min_log_level=log_level) if debug else False,
    )

    # Instrument httpx for trace propagation to the upstream
    logfire.instrument_httpx()


def configure_from(config: GatewayConfig, debug: bool = False) -> bool:
    """Configure Logfire from gateway config. Returns False if LOG is off."""
    if not config.log:
        return False
    configure(debug=debug, log_level=config.log_level.lower())
    return True
