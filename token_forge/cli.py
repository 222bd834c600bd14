from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Sequence

from dotenv import load_dotenv

from .config import ConfigError, GeneratorConfig, load_config
from .core.assets import AssetIndex, AssetIndexError
from .core.batch import BatchAlreadyRunning, BatchOrchestrator, BatchState
from .custom_tokens import CustomTokenError, load_custom_tokens
from .logging_utils import RunLogger, configure_logging, create_logger
from .reports import (
    coverage_report,
    distribution_report,
    duplicates_report,
    load_records,
    rarity_ranking,
    usage_report,
    write_report,
    write_usage_csv,
)

POLL_INTERVAL = 0.5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="token-forge", description="Layered trait token generator")
    parser.add_argument("--config", type=Path, default=Path("token_forge.yaml"), help="Generator configuration file")
    parser.add_argument("--log-level", help="Override logging.level")
    sub = parser.add_subparsers(dest="command", required=True)

    generate = sub.add_parser("generate", help="Generate a batch of tokens")
    generate.add_argument("--count", type=int, required=True, help="Number of tokens, custom 1/1s included")
    generate.add_argument("--start-id", type=int, default=1, help="First token id")
    generate.add_argument("--context", action="append", default=[], help="Base context tag (repeatable)")
    generate.add_argument("--size", type=int, help="Output edge in pixels (1..8192)")
    generate.add_argument("--seed", help="Seed for reproducible batches")
    generate.add_argument("--concurrency", type=int, help="Override generation.concurrency")
    generate.add_argument("--max-rerolls", type=int, help="Override generation.max_rerolls")
    generate.add_argument("--out", type=Path, help="Override paths.output_dir")
    generate.add_argument("--keep-output", action="store_true", help="Do not empty the output directories first")

    sub.add_parser("coverage", help="Tag group coverage of the asset library")

    for name, text in (
        ("usage", "Attribute usage and never-used assets"),
        ("distribution", "Observed values against configured weights"),
        ("duplicates", "Tokens sharing an attribute signature"),
        ("rarity", "Rank tokens by inverse attribute frequency"),
    ):
        report = sub.add_parser(name, help=text)
        report.add_argument("--metadata", type=Path, help="Metadata directory (default: <output_dir>/metadata)")
        report.add_argument("--save", type=Path, help="Also write the report under this directory")
        if name == "rarity":
            report.add_argument("--top", type=int, default=20, help="Number of ranks to print")
    return parser


def _load(args: argparse.Namespace) -> GeneratorConfig:
    config = load_config(args.config) if args.config.exists() else GeneratorConfig()
    config.apply_env(os.environ)
    return config


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _index(config: GeneratorConfig) -> AssetIndex:
    return AssetIndex.build(config.paths.layers, config.layer_order(), extensions=config.render.extensions)


def run_generate(args: argparse.Namespace, config: GeneratorConfig, logger: RunLogger) -> int:
    config.apply_overrides(
        concurrency=args.concurrency,
        max_rerolls=args.max_rerolls,
        seed=args.seed,
        output_dir=args.out,
        output_size=args.size,
        clean_output=False if args.keep_output else None,
    )
    store = logger.timed(
        "rules",
        lambda s: f"{len(s.rules)} rule(s), {len(s.tag_groups)} tag group(s)",
        config.rule_store,
    )
    custom = load_custom_tokens(config.paths.custom_tokens)
    orchestrator = BatchOrchestrator(config.batch_settings(), store, custom_tokens=custom)
    base_context = list(config.generation.base_context) + list(args.context)
    logger.log(
        "start",
        f"count={args.count} start_id={args.start_id} concurrency={config.generation.concurrency} "
        f"custom={min(len(custom), args.count)} context={base_context or '-'}",
    )
    started = time.perf_counter()
    orchestrator.start(args.count, args.start_id, base_context, config.render.output_size)
    last_done = -1
    try:
        while orchestrator.wait(POLL_INTERVAL) is None and orchestrator.running:
            progress = orchestrator.progress()
            if progress["done"] != last_done:
                last_done = progress["done"]
                logger.log("progress", f"{progress['done']}/{progress['total']} failed={progress['failed']}")
    except KeyboardInterrupt:
        logger.log("cancel", "interrupt received; stopping workers", level="WARN")
        orchestrator.cancel()
        orchestrator.wait()

    result = orchestrator.result
    elapsed = (time.perf_counter() - started) * 1000.0
    if result is None:
        logger.log("done", "batch ended without a result", level="ERROR", elapsed_ms=elapsed)
        return 1
    for warning in result.warnings:
        logger.log("rules", warning.message, level="WARN")
    for token in result.failed:
        logger.log("token", f"#{token.token_id}: {token.error}", level="ERROR")
    level = "INFO" if result.state is BatchState.COMPLETED and not result.failed else "WARN"
    logger.log(
        "done",
        f"{result.state.value}: {len(result.persisted)} persisted, {len(result.failed)} failed"
        + (f" ({result.error})" if result.error else ""),
        level=level,
        elapsed_ms=elapsed,
    )
    return 0 if level == "INFO" else 1


def run_report(args: argparse.Namespace, config: GeneratorConfig, logger: RunLogger) -> int:
    if args.command == "coverage":
        _emit(coverage_report(config.rule_store(), _index(config)))
        return 0

    metadata_dir = args.metadata or config.paths.output_dir / "metadata"
    records = logger.timed("load", lambda r: f"{len(r)} record(s) from {metadata_dir}", load_records, metadata_dir)
    payload: Any
    if args.command == "usage":
        payload = usage_report(records, _index(config))
        if args.save:
            write_usage_csv(payload, args.save / "trait-usage.csv")
    elif args.command == "distribution":
        report = distribution_report(records, _index(config), config.rule_store())
        payload = {category: item.as_dict() for category, item in report.items()}
    elif args.command == "duplicates":
        payload = {"duplicates": duplicates_report(records)}
        if payload["duplicates"]:
            logger.log("audit", f"{len(payload['duplicates'])} duplicate token(s)", level="WARN")
    else:
        ranks = rarity_ranking(records)
        payload = {"ranks": [rank.as_dict() for rank in ranks[: max(0, args.top)]], "total": len(ranks)}
    _emit(payload)
    if args.save:
        path = write_report(args.save, args.command, payload)
        logger.log("save", f"report written to {path.as_posix()}")
    if args.command == "duplicates" and payload["duplicates"]:
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = _load(args)
    except ConfigError as exc:
        parser.error(str(exc))
    level = args.log_level or config.logging.level
    config.apply_overrides(log_level=level)
    configure_logging(level)
    logger = create_logger(config.logging.level, config.logging.to_file)
    try:
        if args.command == "generate":
            return run_generate(args, config, logger)
        return run_report(args, config, logger)
    except (AssetIndexError, ConfigError, CustomTokenError, BatchAlreadyRunning, OSError) as exc:
        logger.log(args.command, str(exc), level="ERROR")
        return 2
    finally:
        logger.close()


if __name__ == "__main__":
    sys.exit(main())
