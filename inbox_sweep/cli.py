from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .auth import connect_graph
from .config import AccountConfig, AppConfig, load_config
from .dry_run import DryRunLabelApplier, render_plan
from .errors import TriageError
from .graph_client import GraphClient
from .model_client import ModelClient
from .pipeline import RunSummary, SweepPipeline, TriageContext
from .stores import (
    InMemoryScheduler,
    JsonFileCache,
    JsonFilePropertyStore,
    MemoryCache,
    MemoryPropertyStore,
    PropertyStoreScheduler,
)
from .utils import account_state_dir, configure_logging, load_env_file, new_execution_id, utc_now

logger = logging.getLogger("inbox_sweep.cli")


def _select_accounts(accounts: List[AccountConfig], selected: Optional[List[str]]) -> List[AccountConfig]:
    if not selected:
        return accounts
    s = {x.lower() for x in selected}
    out = [a for a in accounts if a.email.lower() in s]
    if not out:
        raise SystemExit("No accounts matched -a filters")
    return out


def _write_report(repo_root: Path, name: str, content: str) -> Path:
    out_dir = repo_root / "output"
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = utc_now().strftime("%Y%m%d-%H%M%S")
    path = out_dir / f"inbox_sweep_{name}_{stamp}.last.md"
    path.write_text(content, encoding="utf-8")
    return path


def build_context(
    cfg: AppConfig,
    account: AccountConfig,
    graph: Optional[GraphClient] = None,
    execution_id: Optional[str] = None,
) -> TriageContext:
    state_dir = account_state_dir(cfg.data_dir, account.email)
    store = JsonFilePropertyStore(state_dir / "properties.json")
    clients: Dict[str, ModelClient] = {}

    def services(key: str) -> ModelClient:
        if key not in clients:
            clients[key] = ModelClient(definition=cfg.model_definition(key))
        return clients[key]

    return TriageContext(
        classifier=cfg.classifier_for_account(account),
        batch=cfg.batch,
        continuation=cfg.continuation,
        redaction=cfg.redaction,
        store=store,
        cache=JsonFileCache(state_dir / "cache.json"),
        facility=PropertyStoreScheduler(store),
        services=services,
        work_source=graph,
        labels=graph,
        execution_id=execution_id or new_execution_id(),
        account=account.email,
    )


def _dry_run(cfg: AppConfig, account: AccountConfig, limit: int) -> List[str]:
    """Classify up to ``limit`` messages with every mailbox write only recorded.

    Checkpoints, the lock and cached mappings live in memory so a real sweep's
    state is never touched.
    """
    execution_id = new_execution_id()
    graph = connect_graph(cfg, account, execution_id, interactive=True)
    recorder = DryRunLabelApplier()
    base = build_context(cfg, account, graph, execution_id)
    ctx = dataclasses.replace(
        base,
        classifier=dataclasses.replace(base.classifier, max_candidates=max(1, limit)),
        store=MemoryPropertyStore(),
        cache=MemoryCache(),
        facility=InMemoryScheduler(),
        labels=recorder,
    )
    summary = SweepPipeline(ctx).start_run()
    return [
        f"- **{account.email}**: status={summary.status}, would process {summary.processed} message(s)",
        *render_plan(recorder),
    ]


def _ensure_marker_categories(cfg: AppConfig, graph: GraphClient) -> None:
    labels = cfg.labels
    try:
        graph.ensure_master_categories(
            {labels.processed: labels.processed_color, labels.error: labels.error_color}
        )
    except Exception as exc:
        logger.warning("Unable to ensure marker categories: %s", exc)


def _connected_pipeline(cfg: AppConfig, account: AccountConfig, interactive: bool) -> SweepPipeline:
    execution_id = new_execution_id()
    graph = connect_graph(cfg, account, execution_id, interactive=interactive)
    _ensure_marker_categories(cfg, graph)
    return SweepPipeline(build_context(cfg, account, graph, execution_id))


def _summary_line(account: AccountConfig, summary: RunSummary) -> str:
    return (
        f"- **{account.email}**: status={summary.status}, processed={summary.processed} "
        f"(ok={summary.ok}, error={summary.errors}, drafts={summary.drafts}), "
        f"overall={summary.processed_total}/{summary.total_estimated}"
    )


def _tick(cfg: AppConfig, account: AccountConfig) -> List[RunSummary]:
    state_dir = account_state_dir(cfg.data_dir, account.email)
    facility = PropertyStoreScheduler(JsonFilePropertyStore(state_dir / "properties.json"))
    due = facility.pop_due()
    if not due:
        logger.debug("Nothing due for %s", account.email)
        return []
    pipeline = _connected_pipeline(cfg, account, interactive=False)
    summaries = []
    for record in due:
        logger.info("Firing %s (%s) for %s", record["entry_point"], record["id"], account.email)
        summaries.append(pipeline.dispatch(record["entry_point"]))
    return summaries


def main(argv: Optional[List[str]] = None) -> None:
    load_env_file()
    parser = argparse.ArgumentParser("inbox-sweep")
    sub = parser.add_subparsers(dest="cmd", required=True)

    for name, help_text in (
        ("run", "start a fresh sweep"),
        ("continue", "resume from the active checkpoint"),
        ("tick", "fire resumptions that are due (run from cron)"),
        ("cancel", "stop the sweep at the next batch boundary"),
        ("status", "show checkpoint and lock state"),
        ("sweep", "delete expired checkpoint records"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--config", "-c", required=True)
        p.add_argument("-a", "--account", action="append")
        p.add_argument("-v", "--verbose", action="count", default=0)
        if name == "run":
            p.add_argument(
                "--dry-run",
                action="store_true",
                help="classify a few messages and report, without writing to the mailbox",
            )
            p.add_argument("--limit", type=int, default=1, help="messages to try in a dry run")

    args = parser.parse_args(argv)
    configure_logging(args.verbose or 0)

    cfg = load_config(args.config)
    accounts = _select_accounts(cfg.accounts, args.account)

    try:
        if args.cmd == "run" and args.dry_run:
            rows = []
            for a in accounts:
                rows.extend(_dry_run(cfg, a, args.limit))
            md = "# dry run report\n\nNothing was written to the mailbox.\n\n" + "\n".join(rows) + "\n"
            report_path = _write_report(cfg.repo_root, "dry_run", md)
            print(f"Report: {report_path}")
            return

        if args.cmd in ("run", "continue", "tick"):
            rows = []
            for a in accounts:
                if args.cmd == "tick":
                    rows.extend(_summary_line(a, s) for s in _tick(cfg, a))
                    continue
                logger.info("%s for %s (%s)", args.cmd, a.email, a.label)
                pipeline = _connected_pipeline(cfg, a, interactive=args.cmd == "run")
                summary = pipeline.start_run() if args.cmd == "run" else pipeline.resume_run()
                rows.append(_summary_line(a, summary))
            if rows:
                md = f"# {args.cmd} report\n\n" + "\n".join(rows) + "\n"
                report_path = _write_report(cfg.repo_root, args.cmd, md)
                print(f"Report: {report_path}")
            return

        for a in accounts:
            pipeline = SweepPipeline(build_context(cfg, a))
            if args.cmd == "cancel":
                done = pipeline.cancel()
                print(f"{a.email}: {'cancelled' if done else 'cancellation requested'}")
            elif args.cmd == "status":
                print(json.dumps({"account": a.email, **pipeline.status()}, indent=2, default=str))
            elif args.cmd == "sweep":
                print(f"{a.email}: removed {pipeline.sweep()} expired checkpoint(s)")
    except TriageError as exc:
        logger.debug("Run failed: %s", exc)
        print(f"Error: {exc.user_message}", file=sys.stderr)
        raise SystemExit(1) from exc
