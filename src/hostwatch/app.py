"""CLI entrypoint for the telemetry agent."""
from __future__ import annotations

import argparse
import getpass
import sys
import threading
import time
from typing import List, Optional

from .config import load_config
from .context import AgentContext
from .errors import HostwatchError
from .logging_config import configure_logging
from .models import MetricKind
from .query.facade import MetricsQueryService
from .security.vault import SecureVault
from .storage.timeseries import TimeSeriesStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Host telemetry agent")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Sample metrics until interrupted")
    run.add_argument(
        "--ticks",
        type=int,
        default=None,
        help="Stop after this many ticks instead of running forever",
    )

    commands.add_parser("kinds", help="List metric kinds present in the store")

    query = commands.add_parser("query", help="Print stored samples of one metric")
    query.add_argument("kind", choices=[kind.name for kind in MetricKind])
    query.add_argument(
        "--since",
        type=float,
        default=None,
        help="Only samples from the last N seconds",
    )

    secret = commands.add_parser("secret", help="Manage vault secrets")
    secret.add_argument("action", choices=["set", "get", "has", "delete", "list"])
    secret.add_argument("name", nargs="?", default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(config, console=args.command == "run")

    try:
        if args.command == "run":
            return _run(AgentContext.from_config(config), args.ticks)
        if args.command == "secret":
            return _secret(SecureVault(config.vault_dir, config.vault), args.action, args.name)

        vault = SecureVault(config.vault_dir, config.vault) if config.storage.encrypt_samples else None
        with TimeSeriesStore(config.db_path, config.storage, vault=vault) as store:
            queries = MetricsQueryService(store)
            if args.command == "kinds":
                for kind in queries.list_metric_kinds():
                    print(kind.name)
                return 0
            start = time.time() - args.since if args.since is not None else None
            for sample in queries.query(MetricKind[args.kind], start=start):
                source = f" [{sample.source}]" if sample.source else ""
                print(f"{sample.timestamp.wall:.3f}\t{sample.value}{source}")
            return 0
    except HostwatchError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


def _run(context: AgentContext, ticks: Optional[int]) -> int:
    sampling = context.config.sampling
    with context:
        if ticks is not None:
            context.retention.start()
            context.scheduler.configure(sampling.interval_seconds, sampling.jitter_seconds)
            context.scheduler.run(max_ticks=ticks)
        else:
            context.start()
            try:
                threading.Event().wait()
            except KeyboardInterrupt:
                pass
        stats = context.scheduler.stats()
    print(
        f"ticks={stats.ticks} failed={stats.failed_ticks} "
        f"partial={stats.partial_batches} dropped={stats.dropped_batches}"
    )
    return 0


def _secret(vault: SecureVault, action: str, name: Optional[str]) -> int:
    if action == "list":
        for secret_name in vault.list_secrets():
            print(secret_name)
        return 0
    if not name:
        print("error: a secret name is required", file=sys.stderr)
        return 2
    if action == "set":
        vault.put_secret(name, getpass.getpass(f"Value for {name}: "))
    elif action == "get":
        try:
            print(vault.get_secret(name).decode("utf-8"))
        except KeyError:
            print(f"error: no secret named {name}", file=sys.stderr)
            return 1
    elif action == "has":
        return 0 if vault.has_secret(name) else 1
    elif action == "delete":
        return 0 if vault.delete_secret(name) else 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
