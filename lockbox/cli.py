"""
Lockbox CLI: vault, projects, environments and secrets from the shell.

Usage:
    lockbox init                      # Create the vault (prompts for a password)
    lockbox unlock / lock / status    # Session management
    lockbox project create api        # Projects (the new one becomes active)
    lockbox env create dev            # Environments in the active project
    lockbox env branch dev feature-x  # Child environment inheriting from dev
    lockbox set DB_HOST localhost -e dev
    lockbox get DB_URL -e dev --resolve
    lockbox run -e dev -- python app.py
    lockbox export -e prod --format json
    lockbox version
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys

from lockbox.errors import LockboxError

MIN_PASSWORD_LENGTH = 8
HISTORY_VALUE_WIDTH = 60
CHANGE_ICONS = {"create": "+", "update": "~", "delete": "-"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="lockbox",
        description="Lockbox — a local, encrypted secrets manager with environment inheritance.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument("--project", "-p", help="Project to use instead of the active one")

    subparsers = parser.add_subparsers(dest="command")

    # init / unlock / lock / status
    init_parser = subparsers.add_parser("init", help="Create a new vault")
    init_parser.add_argument("--password", help="Master password (default: prompt)")

    unlock_parser = subparsers.add_parser("unlock", help="Unlock the vault")
    unlock_parser.add_argument("--password", help="Master password (default: prompt)")
    unlock_parser.add_argument(
        "--prompt", action="store_true", help="Skip the keychain and ask for the password"
    )

    subparsers.add_parser("lock", help="Lock the vault")
    subparsers.add_parser("status", help="Show vault status")

    # project
    project_parser = subparsers.add_parser("project", help="Manage projects")
    project_sub = project_parser.add_subparsers(dest="project_command")
    project_create = project_sub.add_parser("create", help="Create a project and make it active")
    project_create.add_argument("name")
    project_create.add_argument("--description", "-d", default="", help="Project description")
    project_sub.add_parser("list", help="List projects")
    project_use = project_sub.add_parser("use", help="Set the active project")
    project_use.add_argument("name")
    project_delete = project_sub.add_parser("delete", help="Delete a project and all its secrets")
    project_delete.add_argument("name")
    project_delete.add_argument("--force", "-f", action="store_true", help="Skip confirmation")

    # env
    env_parser = subparsers.add_parser("env", help="Manage environments")
    env_sub = env_parser.add_subparsers(dest="env_command")
    env_create = env_sub.add_parser("create", help="Create an environment")
    env_create.add_argument("name")
    env_create.add_argument("--parent", help="Inherit secrets from this environment")
    env_sub.add_parser("list", help="List environments")
    env_delete = env_sub.add_parser("delete", help="Delete an environment and its secrets")
    env_delete.add_argument("name")
    env_delete.add_argument("--force", "-f", action="store_true", help="Skip confirmation")
    env_branch = env_sub.add_parser("branch", help="Create an environment inheriting from another")
    env_branch.add_argument("parent")
    env_branch.add_argument("name")

    # secrets
    set_parser = subparsers.add_parser("set", help="Create or update a secret")
    set_parser.add_argument("key")
    set_parser.add_argument("value", nargs="?", help="Value (default: prompt)")
    set_parser.add_argument("--env", "-e", required=True, help="Environment name")
    set_parser.add_argument("--stdin", action="store_true", help="Read the value from stdin")

    get_parser = subparsers.add_parser("get", help="Print a secret's value")
    get_parser.add_argument("key")
    get_parser.add_argument("--env", "-e", required=True, help="Environment name")
    get_parser.add_argument("--resolve", action="store_true", help="Expand ${VAR} references")

    list_parser = subparsers.add_parser("list", help="List secrets in an environment")
    list_parser.add_argument("--env", "-e", required=True, help="Environment name")
    list_parser.add_argument("--show-values", action="store_true", help="Show values")

    delete_parser = subparsers.add_parser("delete", help="Delete a secret")
    delete_parser.add_argument("key")
    delete_parser.add_argument("--env", "-e", required=True, help="Environment name")
    delete_parser.add_argument("--force", "-f", action="store_true", help="Skip confirmation")

    history_parser = subparsers.add_parser("history", help="Show a secret's version history")
    history_parser.add_argument("key")
    history_parser.add_argument("--env", "-e", required=True, help="Environment name")
    history_parser.add_argument("--limit", "-l", type=int, default=10, help="Versions to show")
    history_parser.add_argument("--show-values", action="store_true", help="Show values")

    restore_parser = subparsers.add_parser("restore", help="Restore a previous version")
    restore_parser.add_argument("key")
    restore_parser.add_argument("--env", "-e", required=True, help="Environment name")
    restore_parser.add_argument(
        "--version",
        "-v",
        dest="restore_version",
        type=_parse_version,
        required=True,
        help="Version (e.g. 2 or v2)",
    )

    export_parser = subparsers.add_parser("export", help="Export an environment")
    export_parser.add_argument("--env", "-e", required=True, help="Environment name")
    export_parser.add_argument("--format", "-f", choices=["env", "json"], default="env")
    export_parser.add_argument("--resolve", action="store_true", help="Expand ${VAR} references")

    import_parser = subparsers.add_parser("import", help="Import secrets from a .env or JSON file")
    import_parser.add_argument("file")
    import_parser.add_argument("--env", "-e", required=True, help="Environment name")
    import_parser.add_argument(
        "--format", "-f", choices=["env", "json"], help="File format (default: auto-detect)"
    )

    run_parser = subparsers.add_parser("run", help="Run a command with secrets injected")
    run_parser.add_argument("--env", "-e", required=True, help="Environment name")
    run_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Command (after --)")

    # keychain
    kc_parser = subparsers.add_parser("keychain", help="Manage OS keychain unlock")
    kc_sub = kc_parser.add_subparsers(dest="keychain_command")
    kc_sub.add_parser("status", help="Show keychain status")
    kc_enable = kc_sub.add_parser("enable", help="Store the vault key in the OS keychain")
    kc_enable.add_argument("--password", help="Master password (default: prompt)")
    kc_sub.add_parser("disable", help="Remove the vault key from the OS keychain")

    # audit
    audit_parser = subparsers.add_parser("audit", help="Show the audit log")
    audit_parser.add_argument("--limit", "-l", type=int, default=20, help="Entries to show")
    audit_parser.add_argument(
        "--action",
        choices=["read", "create", "update", "delete", "export", "run", "import"],
        help="Only show this action",
    )
    audit_parser.add_argument("--stats", action="store_true", help="Show totals by action")

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from lockbox import __version__

        print(f"lockbox {__version__}")
        return 0

    from lockbox.config import get_config

    logging.basicConfig(
        level=get_config().log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "init": _cmd_init,
        "unlock": _cmd_unlock,
        "lock": _cmd_lock,
        "status": _cmd_status,
        "project": _cmd_project,
        "env": _cmd_env,
        "set": _cmd_set,
        "get": _cmd_get,
        "list": _cmd_list,
        "delete": _cmd_delete,
        "history": _cmd_history,
        "restore": _cmd_restore,
        "export": _cmd_export,
        "import": _cmd_import,
        "run": _cmd_run,
        "keychain": _cmd_keychain,
        "audit": _cmd_audit,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    try:
        return handler(args)
    except (LockboxError, ValueError, OSError) as e:
        print(f"Error: {e}")
        return 1


def _parse_version(raw: str) -> int:
    return int(raw[1:] if raw.startswith("v") else raw)


def _open(args: argparse.Namespace):
    from lockbox.engine import open_engine

    return open_engine(project=getattr(args, "project", None))


def _read_password(args: argparse.Namespace, prompt: str = "Master password: ") -> str:
    if getattr(args, "password", None):
        return args.password
    env_password = os.environ.get("LOCKBOX_PASSWORD")
    if env_password:
        return env_password
    return getpass.getpass(prompt)


def _confirm(question: str) -> bool:
    answer = input(f"{question} [y/N] ")
    return answer.strip() in ("y", "Y")


def _cmd_init(args: argparse.Namespace) -> int:
    from lockbox.config import get_config

    cfg = get_config()
    with _open(args) as engine:
        if engine.vault.is_initialized():
            print(f"Error: vault already initialized at {cfg.data_dir}")
            return 1

        password = _read_password(args, "Choose a master password: ")
        if not args.password and not os.environ.get("LOCKBOX_PASSWORD"):
            if getpass.getpass("Confirm master password: ") != password:
                print("Error: passwords do not match")
                return 1
        if len(password) < MIN_PASSWORD_LENGTH:
            print(f"Error: password must be at least {MIN_PASSWORD_LENGTH} characters")
            return 1

        engine.vault.initialize(password)

    print(f"Vault initialized at {cfg.data_dir}")
    print("Your vault is now unlocked. Use 'lockbox lock' to lock it.")
    return 0


def _cmd_unlock(args: argparse.Namespace) -> int:
    with _open(args) as engine:
        vault = engine.vault
        if not vault.is_initialized():
            print("Error: vault not initialized: run 'lockbox init' first")
            return 1
        if vault.is_unlocked():
            print("Vault is already unlocked")
            return 0

        if not args.prompt and not args.password and vault.is_keychain_enabled():
            try:
                vault.unlock_with_keychain()
                print("Vault unlocked (via keychain)")
                return 0
            except LockboxError as e:
                print(f"Keychain unlock failed ({e}), falling back to password")

        vault.unlock(_read_password(args))
    print("Vault unlocked")
    return 0


def _cmd_lock(args: argparse.Namespace) -> int:
    with _open(args) as engine:
        engine.vault.lock()
    print("Vault locked")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    from lockbox import __version__
    from lockbox.config import get_config

    cfg = get_config()
    print(f"Lockbox v{__version__}")
    print(f"  Vault location: {cfg.data_dir}")

    # Don't create an empty database just to report on it.
    if not cfg.vault_exists():
        print("  Status:         Not initialized")
        print("\nRun 'lockbox init' to create a new vault.")
        return 0

    with _open(args) as engine:
        vault = engine.vault
        if not vault.is_initialized():
            print("  Status:         Not initialized")
            print("\nRun 'lockbox init' to create a new vault.")
            return 0
        print("  Status:         Initialized")

        if vault.is_keychain_enabled():
            print("  Keychain:       Enabled")
        elif vault.is_keychain_available():
            print("  Keychain:       Available (not enabled)")
        else:
            print("  Keychain:       Not available")

        session = vault.current_session()
        if session is not None:
            print(f"  Lock state:     Unlocked (until {session.expires_at:%Y-%m-%d %H:%M} UTC)")
        else:
            print("  Lock state:     Locked")

        try:
            project = engine.active_project()
            print(f"  Active project: {project.name}")
        except LockboxError:
            print("  Active project: None (use 'lockbox project use <name>')")
    return 0


def _cmd_project(args: argparse.Namespace) -> int:
    sub = args.project_command
    with _open(args) as engine:
        if sub == "create":
            engine.create_project(args.name, args.description)
            print(f"Created project '{args.name}'")
            print(f"Project '{args.name}' is now active")
        elif sub == "list":
            projects = engine.list_projects()
            if not projects:
                print("No projects found. Create one with 'lockbox project create <name>'")
                return 0
            active_id = engine.active_project_id()
            print("Projects:")
            for p in projects:
                marker = "* " if p.id == active_id else "  "
                suffix = f" - {p.description}" if p.description else ""
                print(f"{marker}{p.name}{suffix}")
        elif sub == "use":
            engine.use_project(args.name)
            print(f"Now using project '{args.name}'")
        elif sub == "delete":
            engine.get_project(args.name)
            if not args.force and not _confirm(
                f"Delete project '{args.name}' and all its secrets?"
            ):
                print("Cancelled")
                return 0
            engine.delete_project(args.name)
            print(f"Deleted project '{args.name}'")
        else:
            print("Usage: lockbox project {create,list,use,delete}")
            return 1
    return 0


def _cmd_env(args: argparse.Namespace) -> int:
    sub = args.env_command
    with _open(args) as engine:
        if sub == "create":
            engine.create_environment(args.name, parent=args.parent)
            project = engine.active_project()
            print(f"Created environment '{args.name}' in project '{project.name}'")
        elif sub == "branch":
            engine.branch_environment(args.parent, args.name)
            inherited = len(engine.list_secrets(args.name))
            print(
                f"Created environment '{args.name}' inheriting from '{args.parent}' "
                f"({inherited} secrets inherited)"
            )
        elif sub == "list":
            summaries = engine.list_environments()
            project = engine.active_project()
            if not summaries:
                print(
                    f"No environments in project '{project.name}'. "
                    "Create one with 'lockbox env create <name>'"
                )
                return 0
            print(f"Environments in '{project.name}':")
            for s in summaries:
                line = f"  {s.environment.name}"
                if s.parent_name:
                    line += f" ({s.local_count} local, {s.inherited_count} inherited)"
                    line += f" -> inherits from '{s.parent_name}'"
                else:
                    line += f" ({s.local_count} secrets)"
                print(line)
        elif sub == "delete":
            engine.get_environment(args.name)
            if not args.force and not _confirm(f"Delete environment '{args.name}'?"):
                print("Cancelled")
                return 0
            engine.delete_environment(args.name)
            print(f"Deleted environment '{args.name}'")
        else:
            print("Usage: lockbox env {create,list,delete,branch}")
            return 1
    return 0


def _cmd_set(args: argparse.Namespace) -> int:
    if args.stdin:
        value = sys.stdin.read().rstrip("\n")
    elif args.value is not None:
        value = args.value
    else:
        value = getpass.getpass(f"Enter value for {args.key}: ")

    with _open(args) as engine:
        secret = engine.set_secret(args.env, args.key, value)
        project = engine.active_project()
    verb = "Created" if secret.version == 1 else "Updated"
    print(f"{verb} {args.key} in {project.name}/{args.env}")
    return 0


def _cmd_get(args: argparse.Namespace) -> int:
    with _open(args) as engine:
        secret = engine.get_secret(args.env, args.key, resolve=args.resolve)
    print(secret.value)
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    with _open(args) as engine:
        secrets = engine.list_secrets(args.env, show_values=args.show_values)
        project = engine.active_project()
    if not secrets:
        print(f"No secrets in {project.name}/{args.env}")
        return 0

    print(f"Secrets in {project.name}/{args.env}:")
    for s in secrets:
        marker = f" [inherited from {s.source_env_name}]" if s.is_inherited else ""
        if args.show_values:
            print(f"  {s.key} = {s.value}{marker}")
        else:
            print(f"  {s.key}{marker}")
    return 0


def _cmd_delete(args: argparse.Namespace) -> int:
    with _open(args) as engine:
        engine.get_environment(args.env)
        project = engine.active_project()
        if not args.force and not _confirm(
            f"Delete '{args.key}' from {project.name}/{args.env}?"
        ):
            print("Cancelled")
            return 0
        engine.delete_secret(args.env, args.key)
    print(f"Deleted {args.key} from {project.name}/{args.env}")
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    with _open(args) as engine:
        entries = engine.history(
            args.env, args.key, limit=args.limit, show_values=args.show_values
        )
        project = engine.active_project()
    where = f"{project.name}/{args.env}"
    if not entries:
        print(f"No history found for '{args.key}' in {where}")
        return 0

    print(f"History for '{args.key}' in {where}:\n")
    for h in entries:
        icon = CHANGE_ICONS.get(str(h.change_type), "?")
        print(f"  [{icon}] v{h.version}  {h.created_at.isoformat(timespec='seconds')}  {h.change_type}")
        if h.value is not None:
            value = h.value
            if len(value) > HISTORY_VALUE_WIDTH:
                value = value[:HISTORY_VALUE_WIDTH] + "..."
            print(f"       Value: {value}")
    return 0


def _cmd_restore(args: argparse.Namespace) -> int:
    with _open(args) as engine:
        engine.restore(args.env, args.key, args.restore_version)
        project = engine.active_project()
    print(f"Restored '{args.key}' to version {args.restore_version} in {project.name}/{args.env}")
    return 0


def _cmd_export(args: argparse.Namespace) -> int:
    from lockbox.formats import format_secrets

    with _open(args) as engine:
        secrets = engine.export_environment(args.env, resolve=args.resolve)
    sys.stdout.write(format_secrets(secrets, args.format))
    return 0


def _cmd_import(args: argparse.Namespace) -> int:
    from pathlib import Path

    from lockbox.formats import parse_secrets

    text = Path(args.file).read_text()
    secrets = parse_secrets(text, args.format, filename=args.file)
    if not secrets:
        print("No secrets found in file")
        return 0

    with _open(args) as engine:
        result = engine.import_secrets(args.env, secrets)
        project = engine.active_project()
    for key in result.skipped:
        print(f"Skipping invalid key: {key}")
    print(
        f"Imported to {project.name}/{args.env}: "
        f"{result.created} created, {result.updated} updated"
    )
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    from lockbox.runner import run_with_secrets

    command = args.cmd[1:] if args.cmd[:1] == ["--"] else args.cmd
    if not command:
        print("Error: no command specified: use 'lockbox run --env <env> -- <command>'")
        return 1

    with _open(args) as engine:
        secrets = engine.run_environment(args.env)
    return run_with_secrets(command, secrets)


def _cmd_keychain(args: argparse.Namespace) -> int:
    sub = args.keychain_command
    with _open(args) as engine:
        vault = engine.vault
        if sub == "status":
            available = vault.is_keychain_available()
            print(f"Keychain available: {available}")
            if not available:
                print("\nKeychain is not available on this system.")
                return 0
            enabled = vault.is_keychain_enabled()
            print(f"Keychain enabled: {enabled}")
            if enabled:
                print("\nYou can unlock without a password using 'lockbox unlock'.")
            else:
                print("\nEnable with 'lockbox keychain enable' for passwordless unlock.")
        elif sub == "enable":
            if vault.is_keychain_enabled():
                print("Keychain is already enabled")
                return 0
            vault.enable_keychain(_read_password(args))
            print("Keychain enabled. You can now unlock without a password.")
        elif sub == "disable":
            if not vault.is_keychain_enabled():
                print("Keychain is not enabled")
                return 0
            vault.disable_keychain()
            print("Keychain disabled. You'll need to enter your password to unlock.")
        else:
            print("Usage: lockbox keychain {status,enable,disable}")
            return 1
    return 0


def _cmd_audit(args: argparse.Namespace) -> int:
    from lockbox.audit.logger import query_log, stats

    with _open(args) as engine:
        engine.vault.get_key()
        if args.stats:
            summary = stats(engine.store)
            print(f"Total events: {summary['total_events']}")
            for action, count in summary.get("by_action", {}).items():
                print(f"  {action:<8} {count}")
            return 0
        entries = query_log(engine.store, limit=args.limit, action=args.action)

    if not entries:
        print("No audit entries")
        return 0
    for e in entries:
        status = "ok" if e.success else f"FAILED ({e.error_message})"
        target = e.secret_key or "-"
        print(f"  {e.timestamp.isoformat(timespec='seconds')}  {e.action:<7} {target:<24} {status}")
    return 0
