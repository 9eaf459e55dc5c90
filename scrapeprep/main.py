from __future__ import annotations

import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass
class ServeOptions:
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str | None = None


def _env_port(default: int) -> int:
    value = os.getenv("PORT")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise SystemExit(f"PORT must be an integer, got {value!r}") from None


def parse_args(argv: list[str]) -> ServeOptions:
    """Read ``--host``, ``--port`` and ``--log-level``, falling back to HOST/PORT.

    A bare ``PORT`` or ``HOST PORT`` pair is also accepted.
    """

    options = ServeOptions(host=os.getenv("HOST", "127.0.0.1"), port=_env_port(8000))
    positional: list[str] = []
    args = iter(argv)
    for arg in args:
        if arg in ("--host", "--port", "--log-level"):
            value = next(args, None)
            if value is None:
                raise SystemExit(f"{arg} needs a value")
            if arg == "--host":
                options.host = value
            elif arg == "--port":
                if not value.isdigit():
                    raise SystemExit(f"--port must be an integer, got {value!r}")
                options.port = int(value)
            else:
                options.log_level = value.lower()
        else:
            positional.append(arg)

    if len(positional) == 1 and positional[0].isdigit():
        options.port = int(positional[0])
    elif len(positional) == 2 and positional[1].isdigit():
        options.host, options.port = positional[0], int(positional[1])
    elif positional:
        raise SystemExit(f"Unexpected arguments: {' '.join(positional)}")
    return options


def main() -> None:
    """Serve the scrape preparation API."""

    load_dotenv()
    options = parse_args(sys.argv[1:])

    import uvicorn

    uvicorn.run(
        "scrapeprep.cli.server:app",
        host=options.host,
        port=options.port,
        log_level=options.log_level,
    )


if __name__ == "__main__":
    main()
