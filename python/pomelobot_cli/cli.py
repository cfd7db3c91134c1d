"""pomelobot CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Sequence, Tuple

from pomelobot.config import DEFAULT_CONCURRENCY, DEFAULT_HOST, RobotConfig
from pomelobot.errors import CompilationError, ScriptLoadError
from pomelobot.loader import load_script
from pomelobot.reporter import REPLICATOR_LOGGER, LeveledLog, LoggingReporter
from pomelobot.scheduler import Scheduler, script_task
from pomelobot.script import Script

from .output import emit_error, emit_result
from .shell import RobotShell

LOG = logging.getLogger("pomelobot_cli.cli")
SCRIPT_LOGGER = "pomelobot.script"


def _configure_logging(level: str, config: RobotConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # the leveled log gates these itself
    logging.getLogger(REPLICATOR_LOGGER).setLevel(logging.DEBUG)
    logging.getLogger(SCRIPT_LOGGER).setLevel(config.level.logging_level)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pomelobot", description="Pomelo robot client")
    parser.add_argument("files", nargs="*", help="YAML robot scripts")
    parser.add_argument("-H", "--host", default=DEFAULT_HOST, help="Server host (default localhost)")
    parser.add_argument("-P", "--port", type=int, help="Server port (default 3010)")
    parser.add_argument("-S", "--ssl", action="store_true", help="Connect with wss://")
    parser.add_argument("-U", "--uri", help="Full server URI, overrides host/port/ssl")
    parser.add_argument("-t", "--timeout", type=float, help="Connect and request timeout (ms)")
    parser.add_argument("-r", "--replicate", action="store_true", help="Replicate the scripts as concurrent robots")
    parser.add_argument("-i", "--interval", type=float, default=250, help="Admission interval (ms, default 250)")
    parser.add_argument(
        "-c",
        "--concurrency",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help="Maximum live robots (default 100)",
    )
    parser.add_argument("-l", "--level", default="info", help="Robot log level: verbose, info, warn, error or 0-3")
    parser.add_argument("-p", "--prefix", help="Robot name prefix (default _<epoch ms>_robot_)")
    parser.add_argument("-o", "--log", help="Write robot log lines to this file")
    parser.add_argument("--sustain", action="store_true", help="Keep replacing finished robots")
    parser.add_argument("--log-level", default=os.environ.get("POMELOBOT_LOG", "INFO"), help="Logging level (default INFO)")
    parser.add_argument("--json", action="store_true", help="Emit JSON output when supported")
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        config = RobotConfig.from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    _configure_logging(args.log_level, config)
    try:
        if args.files:
            scripts = _load_scripts(args.files, config)
            if args.replicate:
                return asyncio.run(_replicate(scripts, config))
            return asyncio.run(_run_scripts(scripts, json_output=args.json))
        if args.uri or args.port is not None:
            shell = RobotShell(config.transport_config(), config.session_config(), json_output=args.json)
            return asyncio.run(shell.run())
    except (ScriptLoadError, CompilationError) as exc:
        emit_error(args.json, message=str(exc))
        return 1
    except KeyboardInterrupt:
        print()
        return 130
    parser.print_usage(sys.stderr)
    return 2


def _load_scripts(files: Sequence[str], config: RobotConfig) -> List[Tuple[Path, Script]]:
    scripts = []
    for file in files:
        path = Path(file)
        steps = load_script(path)
        try:
            script = Script(
                steps,
                config.options(),
                session_config=config.session_config(),
                transport_config=config.transport_config(),
                name=path.name,
            )
        except CompilationError as exc:
            raise CompilationError(f"{file}: {exc}") from None
        scripts.append((path, script))
    return scripts


async def _run_scripts(scripts: Sequence[Tuple[Path, Script]], *, json_output: bool = False) -> int:
    """Run each script once, in order; stop at the first failure."""
    logger = logging.getLogger(SCRIPT_LOGGER)
    for index, (path, script) in enumerate(scripts, 1):
        domain = f"<{path.stem}>"
        reporter = LoggingReporter(logger, prefix=f"{domain} ")
        runtime = await script.run(reporter, {"id": index, "name": path.stem, "domain": domain})
        await runtime.close()
        if runtime.error is not None:
            emit_error(json_output, message=str(runtime.error), data={"script": str(path)})
            return 1
        emit_result(json_output, message=f"{path}: complete", data={"script": str(path), "steps": len(script)})
    return 0


async def _replicate(scripts: Sequence[Tuple[Path, Script]], config: RobotConfig) -> int:
    log = LeveledLog(config.log_settings())
    scheduler = Scheduler(
        [script_task(script) for _, script in scripts],
        config.scheduler_config(),
        log,
    )
    LOG.debug("replicating %d script(s), concurrency %d", len(scripts), config.concurrency)
    try:
        await scheduler.run()
    except asyncio.CancelledError:
        await scheduler.shutdown()
        raise
    finally:
        log.close()
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
