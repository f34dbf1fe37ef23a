"""Entry point for the edge-deployer CLI."""

from __future__ import annotations

import sys

from .cli import console, run_cli


def app_main() -> None:
    try:
        exit_code = run_cli()
    except KeyboardInterrupt:
        # Ctrl+C: 已创建的资源可能需要手动清理, 见 audit 日志
        console.print("\n⏹️  Interrupted by user")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    app_main()
