#!/usr/bin/env python3
"""kagami CLI - mirror one git remote's branch into another."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"kagami requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)

EXIT_OK = 0
EXIT_BLOCKED = 1
EXIT_ERROR = 2


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="kagami",
        description="Fetch two remotes, diff their branches and merge source into destination",
    )
    ap.add_argument("--config", help="Config file (default: discover .kagami/config.toml)")
    ap.add_argument("--path", help="Local mirror path (default: sync.local_path)")

    sub = ap.add_subparsers(dest="cmd")

    p_diff = sub.add_parser("diff", help="Show changes between source and destination heads")
    p_diff.add_argument("--stat", action="store_true", help="Summary line per file plus totals")
    p_diff.add_argument("--name-only", action="store_true", help="Only list changed paths")

    p_merge = sub.add_parser("merge", help="Merge source into destination and commit when clean")
    merge_mode = p_merge.add_mutually_exclusive_group()
    merge_mode.add_argument("--dry-run", action="store_true", help="Report whether the merge is clean without committing")
    merge_mode.add_argument("--push", action="store_true", help="Push the merged branch to the destination remote")

    p_config = sub.add_parser("config", help="Configuration management")
    config_sub = p_config.add_subparsers(dest="config_cmd")
    config_sub.add_parser("show", help="Show resolved configuration")
    p_config_init = config_sub.add_parser("init", help="Write a config template")
    p_config_init.add_argument("--project", action="store_true", help="Write .kagami/config.toml in the current directory")
    p_config_init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return ap


def _load(args):
    from .config_loader import load_config
    from .observability import configure_logging

    config = load_config(config_file=Path(args.config) if args.config else None)
    configure_logging(
        level=config.logging.level,
        log_dir=config.logging.dir or None,
        disable_file=config.logging.disable_file,
    )
    return config


def _cmd_diff(args, session) -> int:
    diff = session.diff()
    if args.name_only:
        for change in diff:
            print(change.path)
    elif args.stat:
        for change in diff:
            ins, dels = change.line_counts()
            print(f" {change.path} | {ins + dels} {'+' * ins}{'-' * dels}")
        print(f" {diff.stats()}")
    else:
        for patch in diff.patches():
            sys.stdout.write(patch)
    return EXIT_OK


def _cmd_merge(args, session) -> int:
    if session.merge(dry_run=args.dry_run):
        if args.dry_run:
            print(f"Merge of {session.source.tracking_ref} into {session.branch} would be clean")
            return EXIT_OK
        print(f"Merged {session.source.tracking_ref} into {session.branch}")
        if args.push:
            session.push()
            print(f"Pushed {session.branch} to {session.destination.tracking_ref}")
        return EXIT_OK
    result = session.last_merge
    print(f"Merge blocked: {len(result.conflicts)} conflicted path(s)", file=sys.stderr)
    for conflict in result.conflicts:
        print(f"  {conflict.reason}: {conflict.path}", file=sys.stderr)
    return EXIT_BLOCKED


def _cmd_config(args) -> int:
    from .config_loader import CONFIG_FILENAME, ensure_config_dir, render_config_template

    if args.config_cmd == "show":
        config = _load(args)
        print(config.model_dump_json(indent=2))
        return EXIT_OK

    if args.config_cmd == "init":
        config_dir = ensure_config_dir(user=not args.project, project_path=Path.cwd())
        target = config_dir / CONFIG_FILENAME
        if target.exists() and not args.force:
            print(f"Config already exists: {target} (use --force to overwrite)", file=sys.stderr)
            return EXIT_ERROR
        target.write_text(render_config_template(), encoding="utf-8")
        print(f"Wrote {target}")
        return EXIT_OK

    print("usage: kagami config {show,init}", file=sys.stderr)
    return EXIT_ERROR


def main(argv: list[str] | None = None) -> None:
    ap = _build_parser()
    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(EXIT_OK)

    from .config_loader import ConfigError
    from .errors import SyncError

    try:
        if args.cmd == "config":
            sys.exit(_cmd_config(args))

        from .session import SyncSession

        config = _load(args)
        with SyncSession.from_config(config, local_path=args.path) as session:
            if args.cmd == "diff":
                code = _cmd_diff(args, session)
            else:
                code = _cmd_merge(args, session)
        sys.exit(code)
    except (ConfigError, SyncError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    main()
