import argparse
import json
import sys
import time
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def condense_text(value: str, limit: int = 160) -> str:
    compact = " ".join(value.split())
    if len(compact) <= limit:
        return compact
    return compact[: max(0, limit - 3)] + "..."


def format_step(step: Dict[str, Any]) -> str:
    refs = step.get("node_refs") or []
    suffix = f" nodes={len(refs)}" if refs else ""
    status = "" if step.get("status", "ok") == "ok" else " (failed)"
    return (
        f"#{step.get('idx')} {step.get('step_kind')}{status}: "
        f"{condense_text(str(step.get('observation') or ''), 120)}{suffix}"
    )


def print_snapshot(snapshot: Dict[str, Any], verbose: bool = False) -> None:
    run = snapshot.get("run") or {}
    print(f"Run {run.get('id')} [{run.get('phase')}/{run.get('status')}]")
    print(f"Query: {run.get('query')}")
    for step in snapshot.get("steps") or []:
        print(format_step(step))
    error = run.get("error")
    if error:
        print(f"Error: {error.get('code')} - {error.get('message')}")
    answer = snapshot.get("answer")
    if answer:
        grounded = "grounded" if answer.get("grounded") else "NOT grounded"
        print()
        print(answer.get("answer_markdown") or "")
        print()
        print(f"Citations: {', '.join(answer.get('citations') or []) or 'none'} ({grounded})")
        print(f"Confidence: {answer.get('confidence', 0.0):.2f}")
    if verbose:
        print(json.dumps(run.get("quality"), indent=2))
        print(json.dumps(run.get("planner_trace"), indent=2))


def _poll_run(client: httpx.Client, base: str, run_id: str, timeout_s: int) -> Optional[Dict[str, Any]]:
    start = time.time()
    while time.time() - start < timeout_s:
        resp = client.get(_join_url(base, f"/api/run/{run_id}"), timeout=10)
        resp.raise_for_status()
        snapshot = resp.json()
        if (snapshot.get("run") or {}).get("status") != "running":
            return snapshot
        time.sleep(1)
    print("Timed out waiting for the run to finish.")
    return None


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload: Dict[str, Any] = {"project_id": args.project, "query": args.query}
    if args.max_steps:
        payload["max_steps"] = args.max_steps
    if args.document:
        payload["focus_document_id"] = args.document
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/run"), json=payload, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to start run: HTTP {resp.status_code} {resp.text}")
            return 1
        data = resp.json()
        run_id = data.get("run_id")
        print(f"Started run {run_id}")
        if not args.wait:
            return 0
        snapshot = _poll_run(client, base, run_id, timeout_s=args.timeout)
        if snapshot is None:
            return 1
        print_snapshot(snapshot, verbose=args.verbose)
        return 0 if snapshot["run"]["status"] == "completed" else 2


def run_show(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/run/{args.run_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch run: HTTP {resp.status_code}")
            return 1
        print_snapshot(resp.json(), verbose=args.verbose)
    return 0


def run_cancel(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, f"/api/run/{args.run_id}/cancel"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to cancel run: HTTP {resp.status_code}")
            return 1
        print(f"Run {args.run_id}: {resp.json().get('status')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reasoner CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Start a reasoning run")
    ask.add_argument("project", help="Project id to search")
    ask.add_argument("query", help="Question to answer")
    ask.add_argument("--document", help="Focus on a single document id")
    ask.add_argument("--max-steps", type=int, default=None, help="Step budget for the run")
    ask.add_argument("--wait", action="store_true", help="Wait for the run to finish")
    ask.add_argument("--timeout", type=int, default=300, help="Max wait seconds")
    ask.add_argument("--verbose", action="store_true", help="Print quality metrics and planner trace")

    show = subparsers.add_parser("show", help="Print a run snapshot")
    show.add_argument("run_id")
    show.add_argument("--verbose", action="store_true", help="Print quality metrics and planner trace")

    cancel = subparsers.add_parser("cancel", help="Cancel a running run")
    cancel.add_argument("run_id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "show":
        return run_show(args)
    if args.command == "cancel":
        return run_cancel(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
