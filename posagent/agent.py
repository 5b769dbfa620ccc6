import argparse
import json
import os

import uvicorn

from .app.config import Settings
from .app.db import StoreLeaseHeld, init_db
from .app.deps import build_agent
from .app.logs import json_log
from .app.main import create_app


def _settings_from_args(args) -> Settings:
    settings = Settings(config_path=args.config)
    settings.db_path = os.path.abspath(args.db or settings.db_path)
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    return settings


def sync_once(settings: Settings) -> dict:
    """
    Recover, probe, drain once; used by cron-style deployments and support sessions.

    Raises StoreLeaseHeld while a running agent owns the DB.
    """
    agent = build_agent(settings)
    try:
        recovered = agent.queue.recover_interrupted()
        online = agent.connectivity.probe()
        result = agent.engine.sync_now()
    finally:
        agent.lease.release()
    out = {
        "recovered": len(recovered),
        "online": online,
        "result": result.as_dict(),
        "queue": agent.queue.summary(),
    }
    json_log("info", "sync.once", **out)
    return out


def main():
    parser = argparse.ArgumentParser(prog="posagent")
    parser.add_argument("--init-db", action="store_true", help="Initialize local SQLite schema and exit")
    parser.add_argument(
        "--db",
        default=None,
        help="SQLite DB path (default: POS_DB_PATH or pos.sqlite). One DB per register.",
    )
    parser.add_argument("--config", default=os.environ.get("POS_CONFIG_PATH"), help="Optional config JSON path")
    parser.add_argument(
        "--host",
        default=None,
        help="HTTP host to bind (default: 127.0.0.1). Use 0.0.0.0 only if you explicitly want LAN exposure.",
    )
    parser.add_argument("--port", type=int, default=None, help="HTTP port (default: 7070)")
    parser.add_argument("--sync-once", action="store_true", help="Run a single sync pass and exit")
    args = parser.parse_args()

    settings = _settings_from_args(args)

    if args.init_db:
        init_db(settings.db_path)
        print("ok")
        return

    if args.sync_once:
        try:
            out = sync_once(settings)
        except StoreLeaseHeld as ex:
            json_log("error", "sync.once.refused", error=str(ex))
            raise SystemExit(2)
        print(json.dumps(out, default=str))
        return

    init_db(settings.db_path)
    public_host = "localhost" if settings.host in {"127.0.0.1", "localhost"} else settings.host
    print(f"POS Agent running on http://{public_host}:{settings.port}")
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port, log_level="warning")


if __name__ == "__main__":
    main()
