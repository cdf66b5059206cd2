"""larkgate - command line entry point."""

import asyncio
import json
import sys
from pathlib import Path

from loguru import logger

from larkgate.config import load_config
from larkgate.utils.logger import setup_logging


def _print_main_usage() -> None:
    print("larkgate commands:")
    print("  larkgate doctor [config]                 # check required settings")
    print("  larkgate replay <payload.json> [config]  # run one webhook payload through the pipeline")
    print("  larkgate help                            # this text")


def _default_config_path() -> str:
    local = Path("config.local.yaml")
    return str(local) if local.exists() else "config.yaml"


def run_doctor(config_path: str) -> int:
    from larkgate.gateway import doctor

    result = doctor(load_config(config_path))
    print(result["message"])
    return int(result["code"])


async def _replay(payload: dict, config_path: str) -> int:
    from larkgate.gateway import Gateway

    config = load_config(config_path)
    setup_logging(config.log_level, config.log_file)
    gateway = Gateway(config)
    try:
        result = await gateway.handle_inbound_event(payload)
    finally:
        await gateway.aclose()
    print(json.dumps({"admitted": result.admitted, "outcome_kind": result.outcome_kind, "detail": result.detail}))
    return 0 if result.outcome_kind != "error" else 1


def run_replay(payload_path: str, config_path: str) -> int:
    try:
        payload = json.loads(Path(payload_path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Cannot read payload {payload_path}: {e}")
        return 2
    return asyncio.run(_replay(payload, config_path))


def main() -> None:
    """CLI entry point."""
    setup_logging()
    args = sys.argv[1:]

    if not args or args[0] in {"-h", "--help", "help"}:
        _print_main_usage()
        return

    if args[0] == "doctor":
        config_path = args[1] if len(args) > 1 else _default_config_path()
        raise SystemExit(run_doctor(config_path))

    if args[0] == "replay":
        if len(args) < 2:
            print("Usage: larkgate replay <payload.json> [config]")
            raise SystemExit(2)
        config_path = args[2] if len(args) > 2 else _default_config_path()
        raise SystemExit(run_replay(args[1], config_path))

    print(f"Unknown command: {args[0]}")
    _print_main_usage()
    raise SystemExit(2)


if __name__ == "__main__":
    main()
