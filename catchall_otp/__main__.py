"""Entry point for the catch-all OTP service.

Usage::

    python -m catchall_otp serve                       # health server, runs until SIGTERM
    python -m catchall_otp check <address>             # one-shot look for a recent code
    python -m catchall_otp watch <address> [timeout]   # poll until a code arrives

``check`` and ``watch`` print a single line and exit 0 when a code was
found, 1 when none was, and 2 when the mailbox could not be checked.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from .config import ServiceConfig, load_config
from .errors import ConfigurationError, InvalidAddressError
from .logging import setup_logging
from .models import WatchResult, WatchState
from .service import OtpService

USAGE = "Usage: python -m catchall_otp <serve | check <address> | watch <address> [timeout_seconds]>"

EXIT_FOUND = 0
EXIT_NOT_FOUND = 1
EXIT_FAILED = 2


def exit_code(result: WatchResult) -> int:
    if result.state is WatchState.FOUND:
        return EXIT_FOUND
    if result.state is WatchState.FAILED:
        return EXIT_FAILED
    return EXIT_NOT_FOUND


async def run_once(
    config: ServiceConfig,
    mode: str,
    address: str,
    timeout_seconds: float | None = None,
) -> WatchResult:
    async with OtpService(config) as service:
        if mode == "check":
            return await service.check(address)

        service.start_watch(address, timeout_seconds)
        # Ctrl-C ends the watch as cancelled instead of killing the loop
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, service.stop_watch)
        return await service.wait_for(address)


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("serve", "check", "watch"):
        print(USAGE, file=sys.stderr)
        sys.exit(EXIT_FAILED)

    mode = sys.argv[1]

    try:
        config = load_config()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(EXIT_FAILED)

    if mode == "serve":
        asyncio.run(OtpService(config).serve())
        return

    if len(sys.argv) < 3:
        print(USAGE, file=sys.stderr)
        sys.exit(EXIT_FAILED)

    address = sys.argv[2]
    timeout_seconds: float | None = None
    if mode == "watch" and len(sys.argv) > 3:
        try:
            timeout_seconds = float(sys.argv[3])
        except ValueError:
            print(f"Invalid timeout: {sys.argv[3]!r}", file=sys.stderr)
            sys.exit(EXIT_FAILED)

    setup_logging(json=False, level=config.log_level)
    try:
        result = asyncio.run(run_once(config, mode, address, timeout_seconds))
    except InvalidAddressError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(EXIT_FAILED)

    print(result.message)
    sys.exit(exit_code(result))


if __name__ == "__main__":
    main()
