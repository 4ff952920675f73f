"""Command-line entrypoint: run one state graph against a JSON-RPC node.

Example:

    python -m statecheck.main statecheck.graphs.deposit:deposit_graph \
        --fixtures mysuite.contracts:build_fixtures --snapshots --report report.json
"""

import argparse
import asyncio
import importlib
import inspect
import json
import sys
from pathlib import Path
from typing import Any

from statecheck.chain.rpc import EvmSnapshots, JsonRpcSubmitter
from statecheck.common.config import settings
from statecheck.common.logging import configure_logging, logger
from statecheck.common.metrics import write_metrics_textfile
from statecheck.common.startup import log_startup_config
from statecheck.common.tracing import setup_tracing
from statecheck.engine.driver import TraversalDriver
from statecheck.engine.graph import StateGraph
from statecheck.engine.results import RunReport


def load_object(path: str) -> Any:
    """Resolve `package.module:attr.subattr` to the named object."""

    module_name, _, attr_path = path.partition(":")
    if not module_name or not attr_path:
        raise ValueError(f"expected module:attribute, got {path!r}")
    obj: Any = importlib.import_module(module_name)
    for attr in attr_path.split("."):
        obj = getattr(obj, attr)
    return obj


async def build_fixtures(factory_path: str | None, submitter: JsonRpcSubmitter) -> dict[str, Any]:
    fixtures: dict[str, Any] = {}
    if factory_path:
        produced = load_object(factory_path)(submitter)
        if inspect.isawaitable(produced):
            produced = await produced
        fixtures.update(produced)
    fixtures.setdefault("advance_time", EvmSnapshots(submitter).increase_time)
    return fixtures


async def run_graph(
    graph: StateGraph,
    submitter: JsonRpcSubmitter,
    fixtures: dict[str, Any],
    timeout: float | None,
    max_concurrency: int | None,
    snapshots: bool,
) -> RunReport:
    driver = TraversalDriver(
        graph,
        submitter,
        fixtures=fixtures,
        max_concurrency=max_concurrency,
        isolation=EvmSnapshots(submitter) if snapshots else None,
    )
    return await driver.run(timeout=timeout)


def print_summary(report: RunReport) -> None:
    """Print pass/fail counts and one line per failure."""

    for key, value in report.summary().items():
        print(f"{key}={value}")
    for error in report.failures():
        where = error.state if error.edge is None else f"{error.state} -> {error.edge}"
        print(f"FAIL {error.kind} {where}: {error.message}")
    print(f"passed={report.passed}")


async def _main(args: argparse.Namespace) -> int:
    graph = load_object(args.graph)
    if not isinstance(graph, StateGraph):
        raise SystemExit(f"{args.graph} is not a StateGraph")
    event_names = json.loads(Path(args.events).read_text()) if args.events else None

    async with JsonRpcSubmitter(url=args.rpc_url, event_names=event_names) as submitter:
        fixtures = await build_fixtures(args.fixtures, submitter)
        report = await run_graph(
            graph,
            submitter,
            fixtures,
            timeout=args.timeout,
            max_concurrency=args.max_concurrency,
            snapshots=args.snapshots,
        )

    print_summary(report)
    if args.report:
        Path(args.report).write_text(report.model_dump_json(indent=2))
        logger.info("report_written path=%s", args.report)
    if settings.metrics_textfile:
        write_metrics_textfile(settings.metrics_textfile)
    return 0 if report.passed else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Traverse a declarative state graph against an Ethereum node.")
    parser.add_argument("graph", help="StateGraph to run, as module:attribute")
    parser.add_argument("--fixtures", default=None, help="Fixture factory taking the submitter, as module:callable")
    parser.add_argument("--events", default=None, help="JSON file mapping topic0 hashes to event names")
    parser.add_argument("--rpc-url", default=settings.eth_rpc_url)
    parser.add_argument("--timeout", type=float, default=settings.run_timeout_seconds)
    parser.add_argument("--max-concurrency", type=int, default=settings.max_concurrency)
    parser.add_argument("--snapshots", action="store_true", help="Isolate sibling branches with evm_snapshot")
    parser.add_argument("--report", default=None, help="Write the JSON run report to this path")
    args = parser.parse_args(argv)

    configure_logging()
    setup_tracing(settings.service_name)
    log_startup_config(settings, args.graph)
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
