"""
NAC CLI — Nostr identity, signing and entity sync commands.

Commands:
  nac keygen             - Generate a key pair (optionally save it as the identity key)
  nac encode npub|nsec   - Encode a hex key as bech32
  nac decode             - Decode an npub/nsec to hex
  nac sign               - Build and sign an event with the identity key
  nac verify             - Verify a signed event JSON file
  nac publish            - Publish a signed event JSON file to relays
  nac sync push          - Push an entity registry file to relays (encrypted)
  nac sync pull          - Pull entities from relays and merge into a registry file

Relays: --relay (repeatable) > NAC_RELAYS (comma-separated) > built-in defaults.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path


def _relays(args: argparse.Namespace) -> list[str]:
    """Resolve relay URLs from flags, environment, then defaults."""
    from nac import DEFAULT_RELAYS

    if args.relay:
        return args.relay
    env = os.environ.get("NAC_RELAYS", "")
    from_env = [r.strip() for r in env.split(",") if r.strip()]
    return from_env or list(DEFAULT_RELAYS)


def _identity(args: argparse.Namespace):
    from nac.crypto.keys import InvalidKeyError, load_or_create_key

    try:
        return load_or_create_key(args.key_path)
    except (InvalidKeyError, OSError) as e:
        print(f"Error: Cannot load identity key: {e}", file=sys.stderr)
        sys.exit(1)


def _read_json(path: str):
    try:
        text = sys.stdin.read() if path == "-" else Path(path).read_text(encoding="utf-8")
        return json.loads(text)
    except OSError as e:
        print(f"Error: Cannot read {path}: {e}", file=sys.stderr)
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"Error: {path} is not valid JSON: {e}", file=sys.stderr)
        sys.exit(1)


def _load_event(path: str):
    from nac.nostr.event import Event, EventError

    try:
        return Event.from_dict(_read_json(path))
    except EventError as e:
        print(f"Error: Invalid event: {e}", file=sys.stderr)
        sys.exit(1)


def _load_registry(path: str):
    from nac.sync.entity import EntityError, load_registry

    try:
        return load_registry(Path(path))
    except (EntityError, json.JSONDecodeError, OSError) as e:
        print(f"Error: Cannot load registry {path}: {e}", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def cmd_keygen(args: argparse.Namespace) -> None:
    """Generate a key pair and print it as JSON."""
    from nac.crypto.keys import DEFAULT_KEY_PATH, KeyPair, save_key

    pair = KeyPair.generate()
    if args.save:
        path = Path(args.key_path or DEFAULT_KEY_PATH)
        if path.exists():
            print(f"Error: Identity key already exists: {path}", file=sys.stderr)
            sys.exit(1)
        save_key(path, pair)
        print(f"Saved identity key to {path}", file=sys.stderr)

    print(json.dumps(pair.to_dict(include_private=not args.public_only), indent=2))


def cmd_encode(args: argparse.Namespace) -> None:
    """Encode a hex key as npub/nsec."""
    from nac.crypto.keys import InvalidKeyError, encode_npub, encode_nsec

    try:
        key = bytes.fromhex(args.hex)
        encoder = encode_npub if args.prefix == "npub" else encode_nsec
        print(encoder(key))
    except (ValueError, InvalidKeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_decode(args: argparse.Namespace) -> None:
    """Decode an npub/nsec to hex."""
    from nac.crypto.bech32 import Bech32Error, decode

    try:
        prefix, data = decode(args.bech32)
    except Bech32Error as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"{prefix} {data.hex()}")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def cmd_sign(args: argparse.Namespace) -> None:
    """Build an event from flags and sign it with the identity key."""
    from nac.nostr.event import Event, sign_event

    pair = _identity(args)
    event = Event.create(
        pair.public_key_hex,
        args.kind,
        args.content,
        tags=args.tag or [],
    )
    signed = sign_event(event, pair.private_key)
    print(json.dumps(signed.to_dict(), indent=2, ensure_ascii=False))


def cmd_verify(args: argparse.Namespace) -> None:
    """Verify an event's id and signature."""
    from nac.nostr.event import verify_event

    event = _load_event(args.path)
    if verify_event(event):
        print(f"VALID    {event.id}")
    else:
        print(f"INVALID  {event.id or '(no id)'}")
        sys.exit(1)


def cmd_publish(args: argparse.Namespace) -> None:
    """Publish a signed event to relays."""
    from nac.nostr.event import SignatureError
    from nac.nostr.relay import RelayClient

    event = _load_event(args.path)
    relays = _relays(args)

    async def _publish():
        async with RelayClient(relays) as client:
            return await client.publish(event)

    try:
        results = asyncio.run(_publish())
    except SignatureError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    for url, result in results.items():
        status = "OK    " if result.success else "FAILED"
        detail = result.message if result.success else result.error
        print(f"  {status} {url}  {detail or ''}".rstrip())
    if not any(r.success for r in results.values()):
        sys.exit(1)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

def cmd_sync_push(args: argparse.Namespace) -> None:
    """Encrypt and publish every entity in a registry file."""
    from nac.nostr.relay import RelayClient
    from nac.sync.engine import SyncEngine

    pair = _identity(args)
    registry = _load_registry(args.path)
    if not registry:
        print("No entities to push.")
        return

    async def _push():
        async with RelayClient(_relays(args)) as client:
            return await SyncEngine(pair, client).push(registry)

    results = asyncio.run(_push())
    failed = 0
    for entity_id, per_relay in results.items():
        accepted = sum(1 for r in per_relay.values() if r.success)
        if not accepted:
            failed += 1
        print(f"  {registry[entity_id].name:<30} {accepted}/{len(per_relay)} relays")
    print(f"Pushed {len(results) - failed}/{len(results)} entities.")
    if failed:
        sys.exit(1)


def cmd_sync_pull(args: argparse.Namespace) -> None:
    """Fetch entities from relays and merge them into a registry file."""
    from nac.nostr.relay import RelayClient
    from nac.sync.engine import SyncEngine
    from nac.sync.entity import save_registry

    pair = _identity(args)
    registry = _load_registry(args.path)

    async def _pull():
        async with RelayClient(_relays(args)) as client:
            return await SyncEngine(pair, client).pull(registry)

    result = asyncio.run(_pull())
    if result.imported or result.updated:
        save_registry(Path(args.path), result.entities)
    print(f"Merged: {result.summary()}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(
        prog="nac",
        description="Nostr Article Capture — keys, signed events and encrypted entity sync.",
    )
    from nac import __version__
    parser.add_argument("--version", action="version", version=f"nac {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--relay", action="append",
        help="Relay URL (repeatable; default: NAC_RELAYS or built-in list)",
    )
    parser.add_argument("--key-path", type=Path, help="Identity key file (default: ~/.nac/identity_key)")
    sub = parser.add_subparsers(dest="command")

    # keygen
    p_keygen = sub.add_parser("keygen", help="Generate a key pair")
    p_keygen.add_argument("--save", action="store_true", help="Save as the identity key")
    p_keygen.add_argument("--public-only", action="store_true", help="Do not print the private key")

    # encode / decode
    p_enc = sub.add_parser("encode", help="Encode a hex key as npub/nsec")
    p_enc.add_argument("prefix", choices=["npub", "nsec"])
    p_enc.add_argument("hex", help="32-byte key as 64 hex characters")

    p_dec = sub.add_parser("decode", help="Decode an npub/nsec to hex")
    p_dec.add_argument("bech32", help="npub1... or nsec1...")

    # sign
    p_sign = sub.add_parser("sign", help="Build and sign an event")
    p_sign.add_argument("--kind", type=int, default=1, help="Event kind (default: 1)")
    p_sign.add_argument("--content", default="", help="Event content")
    p_sign.add_argument(
        "--tag", action="append", nargs="+", metavar="VALUE",
        help="Tag as NAME VALUE... (repeatable)",
    )

    # verify / publish
    p_verify = sub.add_parser("verify", help="Verify a signed event")
    p_verify.add_argument("path", help="Event JSON file ('-' for stdin)")

    p_pub = sub.add_parser("publish", help="Publish a signed event to relays")
    p_pub.add_argument("path", help="Event JSON file ('-' for stdin)")

    # sync (with subcommands)
    p_sync = sub.add_parser("sync", help="Encrypted entity sync")
    sync_sub = p_sync.add_subparsers(dest="sync_command")

    p_push = sync_sub.add_parser("push", help="Push a registry file to relays")
    p_push.add_argument("path", help="Entity registry JSON file")

    p_pull = sync_sub.add_parser("pull", help="Pull and merge into a registry file")
    p_pull.add_argument("path", help="Entity registry JSON file")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    if not args.command:
        print("NAC — Nostr identity, signing and entity sync")
        print()
        print("Usage:")
        print("  nac keygen [--save] [--public-only]")
        print("  nac encode npub <hex>")
        print("  nac decode <npub1...|nsec1...>")
        print("  nac sign --kind 1 --content 'hello' [--tag t news]")
        print("  nac verify event.json")
        print("  nac publish event.json [--relay wss://...]")
        print("  nac sync push entities.json")
        print("  nac sync pull entities.json")
        print()
        print("Run 'nac <command> --help' for details on any command.")
        sys.exit(0)

    # Handle sync subcommands
    if args.command == "sync":
        sync_commands = {
            "push": cmd_sync_push,
            "pull": cmd_sync_pull,
        }
        sc = getattr(args, "sync_command", None)
        if not sc:
            print("Usage: nac sync {push|pull} <registry.json>")
            sys.exit(0)
        sync_commands[sc](args)
        return

    commands = {
        "keygen": cmd_keygen,
        "encode": cmd_encode,
        "decode": cmd_decode,
        "sign": cmd_sign,
        "verify": cmd_verify,
        "publish": cmd_publish,
    }

    commands[args.command](args)


if __name__ == "__main__":
    main()
