#!/usr/bin/env python3
"""
StrandSign Command Line Interface

Usage:
    strandsign hash --file <file> [--json]
    strandsign level <type[/subtype]> [<type[/subtype]> ...]
    strandsign verify-anchor <txid> [--api-url <url>]
    strandsign keygen --output <file> [--network main|test] [--address <addr>]
    strandsign wallet-keygen --output <file>
    strandsign serve [--host <host>] [--port <port>]
"""

import argparse
import json
import sys
from pathlib import Path


def save_json(data: dict, path: str):
    """Save JSON to file."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def cmd_hash(args):
    """Print the content hash of a document (canonical JSON hash with --json)."""
    from strandsign import content_hash, document_hash

    raw = Path(args.file).read_bytes()
    if args.json:
        print(content_hash(json.loads(raw.decode('utf-8'))))
    else:
        print(document_hash(raw))
    return 0


def cmd_level(args):
    """Classify a set of strands and show the additive score beside the level."""
    from strandsign import InvalidRequest, compute_score, derive_level, validate_strand
    from strandsign.strands import strand_key

    pairs = []
    for item in args.strands:
        t, _, s = item.partition("/")
        try:
            pairs.append(validate_strand(t, s or None))
        except InvalidRequest as e:
            print(f"✗ {item}: {e.message}", file=sys.stderr)
            return 2

    level = derive_level(pairs)
    print(json.dumps({
        "strands": [strand_key(t, s) for t, s in pairs],
        "score": compute_score(pairs),
        "level": level.level,
        "label": level.label,
    }, indent=2))
    return 0


def cmd_verify_anchor(args):
    """Fetch a transaction and check it carries a StrandSign payload."""
    from strandsign import AnchorService, WhatsOnChainClient

    service = AnchorService(WhatsOnChainClient(base_url=args.api_url), timeout=args.timeout)
    result = service.verify(args.txid)
    body = result.to_dict()
    if result.payload:
        body["payload"] = result.payload
    print(json.dumps(body, indent=2))
    if result.verified:
        print("\n✓ Anchor verified", file=sys.stderr)
        return 0
    print(f"\n✗ Not verified: {result.reason}", file=sys.stderr)
    return 1


def cmd_keygen(args):
    """Generate a secp256k1 anchoring key file."""
    from coincurve import PrivateKey

    from strandsign import AnchorConfigurationError
    from strandsign.transaction import encode_wif, public_key_to_address

    key = PrivateKey()
    data = {"wif": encode_wif(key.secret, compressed=True, network=args.network)}
    if args.address:
        data["address"] = args.address
    else:
        try:
            data["address"] = public_key_to_address(key.public_key.format(compressed=True), args.network)
        except AnchorConfigurationError as e:
            print(f"! {e.message}", file=sys.stderr)
    save_json(data, args.output)
    print(f"Anchoring key saved to: {args.output}")
    if "address" in data:
        print(f"Fund this address to enable anchoring: {data['address']}")
    return 0


def cmd_wallet_keygen(args):
    """Generate an Ed25519 wallet key for signing challenges."""
    from strandsign.signing import generate_wallet_key

    private_b64, public_b64 = generate_wallet_key()
    save_json({"walletType": "ed25519", "private_key_b64": private_b64, "address": public_b64}, args.output)
    print(f"Wallet key saved to: {args.output}")
    print(f"Wallet address: {public_b64}")
    return 0


def cmd_serve(args):
    """Run the HTTP service."""
    import uvicorn

    uvicorn.run("strandsign_service.main:app", host=args.host, port=args.port, log_config=None)
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="StrandSign - anchored identity strands and ordered document signing"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    hash_parser = subparsers.add_parser("hash", help="Hash a document")
    hash_parser.add_argument("--file", "-f", required=True, help="File to hash")
    hash_parser.add_argument("--json", action="store_true", help="Hash the canonical JSON form")

    level_parser = subparsers.add_parser("level", help="Compute strength level and score")
    level_parser.add_argument("strands", nargs="+", help="Strands as type or type/subtype")

    verify_parser = subparsers.add_parser("verify-anchor", help="Verify an anchored payload")
    verify_parser.add_argument("txid", help="Ledger transaction id")
    verify_parser.add_argument("--api-url", default="https://api.whatsonchain.com/v1/bsv/main")
    verify_parser.add_argument("--timeout", type=float, default=30.0)

    keygen_parser = subparsers.add_parser("keygen", help="Generate an anchoring key")
    keygen_parser.add_argument("--output", "-o", default="secrets/anchor_key.json")
    keygen_parser.add_argument("--network", choices=["main", "test"], default="main")
    keygen_parser.add_argument("--address", help="Record this address instead of deriving it")

    wallet_parser = subparsers.add_parser("wallet-keygen", help="Generate an Ed25519 wallet key")
    wallet_parser.add_argument("--output", "-o", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 1

    commands = {
        "hash": cmd_hash,
        "level": cmd_level,
        "verify-anchor": cmd_verify_anchor,
        "keygen": cmd_keygen,
        "wallet-keygen": cmd_wallet_keygen,
        "serve": cmd_serve,
    }
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
