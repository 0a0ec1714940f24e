import argparse
import json
import logging
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stage_plane.base import ChangeKind, RemoteStore, StagedChange, StagingStore
from stage_plane.config import ConfigError, PublishConfig, load_config
from stage_plane.errors import StagePlaneError
from stage_plane.executor import CommitTransactionExecutor, TransactionState
from stage_plane.impl.git import create_git_remote_store
from stage_plane.impl.github import create_github_remote_store
from stage_plane.impl.sql import Base, create_sql_staging_store

DEFAULT_DB_URL = "sqlite:///stage-plane.db"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFLICT = 2


def open_store(db_url: str, session_name: str) -> StagingStore:
    engine = create_engine(db_url)
    Base.metadata.create_all(engine)
    return create_sql_staging_store(sessionmaker(bind=engine), session_name=session_name)


def open_remote(args: argparse.Namespace, config: PublishConfig) -> RemoteStore:
    if args.git_root:
        return create_git_remote_store(args.git_root)
    return create_github_remote_store(config.token)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stage-plane", description="Stage file changes and publish them as one commit"
    )
    parser.add_argument(
        "--db",
        default=os.environ.get("STAGE_PLANE_DB", DEFAULT_DB_URL),
        help="Staging database URL (default: $STAGE_PLANE_DB or sqlite:///stage-plane.db)",
    )
    parser.add_argument("--session", default="default", help="Staging session name")
    parser.add_argument("--target", default=None, help="Repository, overrides $GITHUB_REPO")
    parser.add_argument("--ref", default=None, help="Branch, overrides $GITHUB_BRANCH")
    parser.add_argument(
        "--git-root", default=None, help="Publish to local git repositories under this directory"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    stage = commands.add_parser("stage", help="Stage a change")
    stage.add_argument("kind", choices=[kind.value for kind in ChangeKind])
    stage.add_argument("path")
    stage.add_argument("--from", dest="previous_path", default=None, help="Source path of a rename")
    stage.add_argument("--file", default=None, help="Read the new content from this file")
    stage.add_argument("--base", default=None, help="Object reference currently at the path")
    stage.add_argument("--note", default=None, help="Description used in the commit message")

    unstage = commands.add_parser("unstage", help="Drop the staged change for a path")
    unstage.add_argument("path")

    commands.add_parser("list", help="Show staged changes")
    commands.add_parser("clear", help="Drop all staged changes")
    commands.add_parser("preview", help="Report staged changes that are out of date")

    publish = commands.add_parser("publish", help="Commit all staged changes")
    publish.add_argument("-m", "--message", default=None, help="Commit message")

    return parser


def _stage(store: StagingStore, args: argparse.Namespace) -> int:
    body = Path(args.file).read_text(encoding="utf-8") if args.file else None
    change = store.stage(
        StagedChange(
            kind=ChangeKind(args.kind),
            path=args.path,
            previous_path=args.previous_path,
            body=body,
            base_revision=args.base,
            note=args.note,
        )
    )
    if change is None:
        print(f"Unstaged {args.path} ({store.count()} pending)")
    else:
        print(f"Staged {change.kind.value} {change.path} ({store.count()} pending)")
    return EXIT_OK


def _list(store: StagingStore) -> int:
    changes = store.list()
    if not changes:
        print("Nothing staged")
    for change in changes:
        source = f"{change.previous_path} -> " if change.previous_path else ""
        print(f"{change.kind.value:<7} {source}{change.path}  {change.note or ''}".rstrip())
    return EXIT_OK


def run(args: argparse.Namespace) -> int:
    store = open_store(args.db, args.session)

    if args.command == "stage":
        return _stage(store, args)
    if args.command == "unstage":
        store.unstage(args.path)
        return EXIT_OK
    if args.command == "list":
        return _list(store)
    if args.command == "clear":
        store.clear()
        return EXIT_OK

    config = load_config(require_token=not args.git_root, target=args.target)
    if args.ref:
        config.branch = args.ref
    with open_remote(args, config) as remote:
        executor = CommitTransactionExecutor(remote, config)

        if args.command == "preview":
            stale = executor.preview(store.list())
            for item in stale:
                print(f"stale   {item.path}  staged {item.expected}, remote {item.actual}")
            return EXIT_CONFLICT if stale else EXIT_OK

        result = executor.publish(store, message=args.message)
    print(json.dumps(result.to_response(), indent=2))
    if result.success:
        return EXIT_OK
    if result.state is TransactionState.CONFLICT:
        return EXIT_CONFLICT
    return EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return run(args)
    except (ConfigError, StagePlaneError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
