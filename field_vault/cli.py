#!/usr/bin/env python3
import argparse
import json
import sys

from field_vault.boundary import MessageBoundary
from field_vault.classifier import Classifier
from field_vault.config import FieldVaultConfig, build_audit_sink, build_key_store, configure_logging
from field_vault.errors import EncodingError, FieldVaultError
from field_vault.keystore import FileKeyStore
from field_vault.policy import PolicyStore


def _read_json(path: str) -> dict:
    if path == "-":
        record = json.load(sys.stdin)
    else:
        with open(path, "r", encoding="utf-8") as f:
            record = json.load(f)
    if not isinstance(record, dict):
        raise EncodingError(f"{path}: record must be a JSON object")
    return record


def _read_bytes(path: str) -> bytes:
    if path == "-":
        return sys.stdin.buffer.read()
    with open(path, "rb") as f:
        return f.read()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Field Vault CLI - field-level protection for message payloads")
    parser.add_argument("--policy", help="Policy file or URL (default: $FIELD_VAULT_POLICY)")
    parser.add_argument("--key-dir", help="Key directory (default: $FIELD_VAULT_KEY_DIR)")
    parser.add_argument("--log-level", help="Logging level (default: $FIELD_VAULT_LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- Keys ---
    p_keygen = subparsers.add_parser("keygen", help="Create version 1 of a new key")
    p_keygen.add_argument("ref")

    p_rotate = subparsers.add_parser("rotate", help="Rotate a key to a new active version")
    p_rotate.add_argument("ref")

    p_destroy = subparsers.add_parser("destroy", help="Destroy a retired key version")
    p_destroy.add_argument("ref")
    p_destroy.add_argument("version", type=int)

    p_list = subparsers.add_parser("list-keys", help="List versions of a key")
    p_list.add_argument("ref")

    # --- Policy ---
    subparsers.add_parser("check-policy", help="Load and summarize the policy")

    p_classify = subparsers.add_parser("classify", help="Print the classification of a JSON record")
    p_classify.add_argument("file", help="JSON record file, or - for stdin")

    # --- Protection ---
    p_protect = subparsers.add_parser("protect", help="Protect a JSON record and write wire bytes")
    p_protect.add_argument("file", help="JSON record file, or - for stdin")

    p_unprotect = subparsers.add_parser("unprotect", help="Decrypt wire bytes for the given roles")
    p_unprotect.add_argument("file", help="Wire bytes file, or - for stdin")
    p_unprotect.add_argument("--roles", required=True, help="Comma-separated caller roles")
    p_unprotect.add_argument("--caller", help="Caller identity for the audit trail")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = FieldVaultConfig.from_env()
        if args.policy:
            config.policy = args.policy
        if args.key_dir:
            config.key_dir = args.key_dir
        configure_logging(args.log_level or config.log_level)
        return _dispatch(args, config)
    except FieldVaultError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        print(f"Error: invalid JSON input: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _dispatch(args, config: FieldVaultConfig) -> int:
    # ==================== Command Handlers ====================

    if args.command in ("keygen", "rotate", "destroy", "list-keys"):
        keys = FileKeyStore(config.key_dir)
        if args.command == "keygen":
            keys.create(args.ref)
            print(f"Created key {args.ref} version 1")
        elif args.command == "rotate":
            version = keys.rotate(args.ref)
            print(f"Key {args.ref} now at version {version}")
        elif args.command == "destroy":
            keys.destroy(args.ref, args.version)
            print(f"Destroyed key {args.ref} version {args.version}")
        else:
            active = keys.get_active_version(args.ref)
            for version in keys.versions(args.ref):
                marker = " (active)" if version == active else ""
                print(f"{args.ref} v{version}{marker}")
        return 0

    store = PolicyStore(config.policy)

    if args.command == "check-policy":
        snapshot = store.snapshot()
        print(f"Policy: {snapshot.source}")
        print(f"Digest: {snapshot.digest}")
        for name, rule in snapshot.rules.items():
            mode = "deterministic" if rule.deterministic else "randomized"
            roles = ", ".join(sorted(rule.authorized_roles))
            print(f"  {name}: {rule.algorithm} key={rule.key_ref} {mode} roles=[{roles}]")
        print(f"Patterns ({len(snapshot.patterns)}), in evaluation order:")
        for p in snapshot.patterns:
            field_expr = p.field_re.pattern if p.field_re else "*"
            value_expr = p.value_re.pattern if p.value_re else "*"
            print(f"  [{p.priority}] field={field_expr} value={value_expr} -> {p.sensitivity_class}")
        return 0

    if args.command == "classify":
        print(json.dumps(Classifier(store).classify(_read_json(args.file)), indent=2))
        return 0

    boundary = MessageBoundary(
        store,
        build_key_store(config),
        audit_sink=build_audit_sink(config),
        default_timeout=config.timeout or None,
        identity=config.identity or None,
    )
    try:
        if args.command == "protect":
            sys.stdout.buffer.write(boundary.on_send(_read_json(args.file)))
            sys.stdout.buffer.write(b"\n")
        elif args.command == "unprotect":
            roles = [r.strip() for r in args.roles.split(",") if r.strip()]
            record = boundary.on_receive(_read_bytes(args.file).strip(), roles, caller=args.caller)
            print(json.dumps(record, indent=2))
    finally:
        boundary.codec.audit_sink.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
