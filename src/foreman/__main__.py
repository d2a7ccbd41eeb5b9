"""Foreman CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from foreman.config import INIT_SCRIPT_FILENAME, STATE_DIR_NAME

# ── Default templates for `foreman init` ─────────────────────────────────────

_DEFAULT_CONFIG = """\
# .foreman/config.yaml: Foreman configuration for {project_name}
# Pass it with `foreman serve --config .foreman/config.yaml`.

project:
  main_branch: null  # null: the branch checked out in the project root

auto_mode:
  max_concurrency: 3
  require_approval: true
  use_worktrees: true
  planning: true
  poll_interval: 5.0
  verification_commands: []
  verification_timeout: 600

worktrees:
  dir_name: .worktrees

agent:
  command: [claude, --print, --output-format, stream-json, --verbose]
  model: null
  max_turns: 50

security:
  allowed_roots:
    - "{project_root}"

server:
  host: 127.0.0.1
  port: 8008
"""

_DEFAULT_INIT_SCRIPT = """\
#!/usr/bin/env bash
# Runs once in every new worktree. Available variables:
#   FOREMAN_PROJECT_PATH, FOREMAN_WORKTREE_PATH, FOREMAN_BRANCH
set -e

echo "Initializing worktree for $FOREMAN_BRANCH"

# Copy untracked env files from the main checkout, for example:
# cp "$FOREMAN_PROJECT_PATH/.env" .env

# Install dependencies, for example:
# npm install
"""


def _init_project(project_root: Path) -> None:
    """Scaffold a .foreman/ directory with a config and an init script."""
    project_root = project_root.resolve()
    state_dir = project_root / STATE_DIR_NAME
    config_path = state_dir / "config.yaml"
    script_path = state_dir / INIT_SCRIPT_FILENAME

    if config_path.exists():
        print(f"Error: {config_path} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    state_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        _DEFAULT_CONFIG.format(project_name=project_root.name, project_root=project_root)
    )
    if not script_path.exists():
        script_path.write_text(_DEFAULT_INIT_SCRIPT)
        script_path.chmod(0o755)

    print(f"Initialized Foreman in {state_dir}")
    print()
    print("Next steps:")
    print(f"  1. Edit {config_path.relative_to(project_root)} (verification commands, agent)")
    print(f"  2. Edit {script_path.relative_to(project_root)} to bootstrap new worktrees")
    print(f"  3. Run: foreman serve --config {config_path.relative_to(project_root)}")


def main():
    parser = argparse.ArgumentParser(
        prog="foreman",
        description="Foreman: agent-driven feature development in isolated git worktrees",
    )
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init", help="Initialize .foreman/ in a project")
    init_parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Project root directory (default: current directory)",
    )

    serve_parser = subparsers.add_parser("serve", help="Start the Foreman server")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config file (default: $FOREMAN_CONFIG or ~/.foreman/config.yaml)",
    )
    serve_parser.add_argument("--host", default=None, help="Host to bind to (default: from config)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: from config)")
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )

    args = parser.parse_args()

    if args.command == "init":
        _init_project(args.project_root)
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    import uvicorn
    from pydantic import ValidationError

    from foreman.config import load_config
    from foreman.server import create_app

    try:
        config = load_config(args.config)
    except ValidationError as e:
        print(f"Error: invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(1)

    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(config)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
