from __future__ import annotations

import argparse
import json

from logic_deploy.core.errors import PipelineError
from logic_deploy.db.session import SessionLocal
from logic_deploy.services.release_registry import (
    archive_release,
    get_release_by_id,
    list_releases,
    serialize_release,
    sync_releases,
    upsert_release,
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Manage logic release records in the control-plane DB")
    subparsers = parser.add_subparsers(dest="command", required=True)

    upsert_parser = subparsers.add_parser("upsert")
    upsert_parser.add_argument("--project-id", required=True)
    upsert_parser.add_argument("--version-id", required=True)
    upsert_parser.add_argument("--snapshot-id", required=True)
    upsert_parser.add_argument("--stage", default="candidate")
    upsert_parser.add_argument("--target", action="append", default=[], help="target runtime id (repeatable)")
    upsert_parser.add_argument("--created-by", default=None)

    sync_parser = subparsers.add_parser("sync")
    sync_parser.add_argument("--project-id", required=True)

    get_parser = subparsers.add_parser("get")
    get_parser.add_argument("--release-id", required=True)

    archive_parser = subparsers.add_parser("archive")
    archive_parser.add_argument("--release-id", required=True)
    archive_parser.add_argument("--actor-id", default=None)

    list_parser = subparsers.add_parser("list")
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--project-id", default=None)
    list_parser.add_argument("--stage", default=None)
    list_parser.add_argument("--include-archived", action="store_true")

    args = parser.parse_args()

    db = SessionLocal()
    try:
        if args.command == "upsert":
            release = upsert_release(
                db=db,
                project_id=args.project_id,
                version_id=args.version_id,
                snapshot_id=args.snapshot_id,
                stage=args.stage,
                metadata={"target_runtimes": args.target} if args.target else None,
                created_by=args.created_by,
            )
            print(json.dumps(serialize_release(release)))
            return 0

        if args.command == "sync":
            records = sync_releases(db=db, project_id=args.project_id)
            print(json.dumps([serialize_release(item) for item in records]))
            return 0

        if args.command == "get":
            release = get_release_by_id(db=db, release_id=args.release_id)
            if release is None:
                print(json.dumps({"error": "release_not_found", "release_id": args.release_id}))
                return 2
            print(json.dumps(serialize_release(release)))
            return 0

        if args.command == "archive":
            release = archive_release(db=db, release_id=args.release_id, actor_id=args.actor_id)
            print(json.dumps(serialize_release(release)))
            return 0

        if args.command == "list":
            records = list_releases(
                db=db,
                limit=args.limit,
                project_id=args.project_id,
                stage=args.stage,
                include_archived=args.include_archived,
            )
            print(json.dumps([serialize_release(item) for item in records]))
            return 0

        print(json.dumps({"error": "unsupported_command"}))
        return 1
    except PipelineError as exc:
        db.rollback()
        print(json.dumps({"error": exc.code, **exc.to_payload()}))
        return 2
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
