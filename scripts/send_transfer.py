"""
Build (and optionally send) an SPL token transfer from the command line.

Requirements:
- SOLANA_RPC or HELIUS_RPC_URL set in the environment (or .env).
- For --send, a key via --key-file or RAMPA_PRIVATE_KEY (hex, base58 or JSON array).

Without --send the unsigned transaction is printed as base64 for a wallet to sign.
"""

from __future__ import annotations

import argparse
import json
import logging
import os

from rampa_backend.assembler import TransactionAssembler, TransferRequest, WalletSession
from rampa_backend.errors import SigningError
from rampa_backend.main import Settings
from rampa_backend.rpc import RpcClient
from rampa_backend.signer import KeypairSigner, keypair_from_secret, load_keypair_file
from rampa_backend.tx_builder import lookup_token, to_pubkey, to_raw_amount


def main() -> None:
    parser = argparse.ArgumentParser(description="Build or send an SPL token transfer.")
    parser.add_argument("recipient", help="Recipient wallet address")
    parser.add_argument("mint", help="Token mint address")
    parser.add_argument("amount", help="Human amount, e.g. 1.25")
    parser.add_argument("--owner", help="Sender wallet (defaults to the signing key's wallet)")
    parser.add_argument("--decimals", type=int, help="Token decimals for mints outside the registry")
    parser.add_argument("--key-file", help="Keypair file used for --send")
    parser.add_argument("--send", action="store_true", help="Sign locally and submit")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    settings = Settings()

    decimals = args.decimals
    if decimals is None:
        info = lookup_token(args.mint, settings.network)
        if info is None:
            raise SystemExit(f"Unknown mint {args.mint} on {settings.network}; pass --decimals")
        decimals = info.decimals

    signer = None
    if args.send:
        try:
            if args.key_file:
                keypair = load_keypair_file(args.key_file)
            elif os.getenv("RAMPA_PRIVATE_KEY"):
                keypair = keypair_from_secret(os.environ["RAMPA_PRIVATE_KEY"])
            else:
                raise SystemExit("--send needs --key-file or RAMPA_PRIVATE_KEY")
        except (OSError, SigningError) as exc:
            raise SystemExit(f"Cannot load signing key: {exc}") from exc
        signer = KeypairSigner(keypair)
        owner = to_pubkey(args.owner) if args.owner else signer.pubkey()
    elif args.owner:
        owner = to_pubkey(args.owner)
    else:
        raise SystemExit("--owner is required when building for a wallet")

    try:
        amount = to_raw_amount(args.amount, decimals)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    rpc = RpcClient(settings.helius_rpc_url or settings.solana_rpc)
    assembler = TransactionAssembler(rpc, commitment=settings.commitment, probe_delay=settings.probe_delay_seconds)
    session = WalletSession(owner=owner, signer=signer, network=settings.network)
    request = TransferRequest(recipient=to_pubkey(args.recipient), mint=to_pubkey(args.mint), amount=amount)
    try:
        outcome = assembler.send_transfer(session, request) if args.send else assembler.build_transfer(session, request)
    finally:
        rpc.close()

    print(json.dumps(outcome.to_dict(), indent=2))
    if not outcome.success:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
