from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _auth() -> tuple[str, str]:
    return os.getenv("BGD_ADMIN_USER", "admin"), os.getenv("BGD_ADMIN_PASSWORD", "change-me")


def _load_json(path: str) -> dict:
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def serve(host: str, port: int) -> int:
    import uvicorn

    from main import app

    uvicorn.run(app, host=host, port=port)
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Blue/Green Deployer CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("services", help="List services with traffic state")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service")

    s_reg = sub.add_parser("register", help="Register a service (creates blue/green environments)")
    s_reg.add_argument("--service", required=True)
    s_reg.add_argument("--production-port", type=int)
    s_reg.add_argument("--test-port", type=int)

    s_dep = sub.add_parser("deploy", help="Submit a revision (JSON document, e.g. examples/revision.json)")
    s_dep.add_argument("--service", required=True)
    s_dep.add_argument("--file", required=True, help="Path to the revision JSON")
    s_dep.add_argument("--log-shipping", action="store_true", help="Enable the log router sidecar")
    s_dep.add_argument("--metrics", action="store_true", help="Enable metrics collection")
    s_dep.add_argument("--tracing", action="store_true", help="Enable tracing auto-instrumentation")

    s_st = sub.add_parser("status", help="Show a deployment attempt, or all attempts of a service")
    grp = s_st.add_mutually_exclusive_group(required=True)
    grp.add_argument("--id")
    grp.add_argument("--service")

    s_ab = sub.add_parser("abort", help="Abort an in-flight deployment")
    s_ab.add_argument("--id", required=True)
    s_ab.add_argument("--reason", default="Aborted by operator")

    s_tr = sub.add_parser("traffic", help="Show production/test bindings")
    s_tr.add_argument("--service", required=True)

    s_srv = sub.add_parser("serve", help="Run the API and the listener gateway in this process")
    s_srv.add_argument("--host", default="0.0.0.0")
    s_srv.add_argument("--port", type=int, default=8000)

    args = p.parse_args(argv)

    if args.cmd == "serve":
        return serve(args.host, args.port)

    base = args.api.rstrip("/")
    auth = _auth()

    if args.cmd == "services":
        _print(requests.get(f"{base}/services", auth=auth, timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        _print(requests.get(f"{base}/events", params=params, auth=auth, timeout=10).json())
        return 0

    if args.cmd == "register":
        payload = {"name": args.service, "production_port": args.production_port, "test_port": args.test_port}
        r = requests.post(f"{base}/services", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "deploy":
        payload = _load_json(args.file)
        flags = payload.setdefault("flags", {})
        if args.log_shipping:
            flags["enable_log_shipping"] = True
        if args.metrics:
            flags["enable_metrics_collection"] = True
        if args.tracing:
            flags["enable_tracing"] = True
        r = requests.post(f"{base}/services/{args.service}/deployments", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "status":
        if args.id:
            r = requests.get(f"{base}/deployments/{args.id}", auth=auth, timeout=10)
        else:
            r = requests.get(f"{base}/services/{args.service}/deployments", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "abort":
        r = requests.post(f"{base}/deployments/{args.id}/abort", json={"reason": args.reason}, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "traffic":
        r = requests.get(f"{base}/services/{args.service}/traffic", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
