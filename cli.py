from __future__ import annotations

import argparse
import json
import sys

import requests
import yaml

from dre.errors import DuplicateFieldError
from dre.manifest import load_json, load_yaml_documents


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def load_documents(path: str) -> list[dict]:
    """Read desired-state documents from a YAML (multi-document) or JSON file."""
    with open(path, encoding="utf-8") as fh:
        text = fh.read()
    if path.endswith(".json"):
        data = load_json(text)
        docs = data if isinstance(data, list) else [data]
    else:
        docs = load_yaml_documents(text)
    for d in docs:
        if not isinstance(d, dict) or not {"kind", "name", "spec"} <= set(d):
            raise ValueError(f"{path}: every document needs kind, name and spec")
    return docs


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Declarative Reconciliation Engine CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_apply = sub.add_parser("apply", help="Apply desired-state documents")
    s_apply.add_argument("-f", "--file", required=True, help="YAML or JSON file")

    s_del = sub.add_parser("delete", help="Delete a document")
    s_del.add_argument("kind", choices=["Workload", "Service", "ConfigSet", "VolumeClaim", "VolumePool"])
    s_del.add_argument("name")

    sub.add_parser("status", help="Workloads with their instances and rollout")

    s_inst = sub.add_parser("instances", help="Instances of one workload")
    s_inst.add_argument("workload")

    sub.add_parser("rollouts", help="Rollout conditions")

    s_cancel = sub.add_parser("cancel", help="Cancel an in-progress rollout")
    s_cancel.add_argument("workload")

    s_ep = sub.add_parser("endpoints", help="Ready endpoints behind a service")
    s_ep.add_argument("service")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--resource", help="e.g. workload/api")

    sub.add_parser("reconcile", help="Run a reconciliation pass now")

    s_pool = sub.add_parser("delete-pool", help="Erase a volume pool and its data")
    s_pool.add_argument("name")
    s_pool.add_argument("--confirm", required=True, help="Repeat the pool name to confirm data loss")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "apply":
        try:
            docs = load_documents(args.file)
        except (OSError, ValueError, yaml.YAMLError, DuplicateFieldError) as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
        r = requests.put(f"{base}/documents", json=docs, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete":
        r = requests.delete(f"{base}/documents/{args.kind}/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "status":
        _print(requests.get(f"{base}/workloads", timeout=10).json())
        return 0

    if args.cmd == "instances":
        r = requests.get(f"{base}/workloads/{args.workload}/instances", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "rollouts":
        _print(requests.get(f"{base}/rollouts", timeout=10).json())
        return 0

    if args.cmd == "cancel":
        r = requests.post(f"{base}/rollouts/{args.workload}/cancel", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "endpoints":
        r = requests.get(f"{base}/services/{args.service}/endpoints", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.resource:
            params["resource"] = args.resource
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "reconcile":
        r = requests.post(f"{base}/reconcile", timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete-pool":
        r = requests.delete(f"{base}/pools/{args.name}", params={"confirm": args.confirm}, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
