#!/usr/bin/env python3
"""
DAOShip - Main Entry Point
==========================

Operator CLI for DAOShip:
1. Register DAOs, proposals and votes from wallet-signed messages
2. Create a DAO's governance token with the required creator wallet
3. Distribute equal shares to the fixed distribution wallets

Setup:
    pip install -e .
    # Create .env with your settings
    python main.py init

Commands:
    python main.py init                                  # Generate an operator wallet
    python main.py status                                # Show configuration and records
    python main.py wallets                               # List distribution wallets
    python main.py plan <supply>                         # Preview a distribution
    python main.py create-dao <name> [description]       # Register a DAO
    python main.py join <dao_id> [address]               # Add a member
    python main.py members <dao_id>                      # List members
    python main.py propose <dao_id> <title> [description]
    python main.py vote <proposal_id> <yes|no|abstain> [power]
    python main.py execute <proposal_id> [tx_reference]
    python main.py create-token <dao_id> <name> <symbol> <supply>
    python main.py verify <token_reference>              # Check recipient balances

Environment Variables:
    DAOSHIP_NETWORK       - mainnet, testnet or devnet
    LEDGER_API_URL        - Ledger gateway URL (defaults per network)
    DAOSHIP_WALLET_KEY    - Operator private key (hex)
    DAOSHIP_SIMULATE      - "true" to use the tagged in-process ledger
    STORE_PATH            - JSON file holding DAO records
"""

import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone

from daoship import distribution
from daoship.config import DAOShipConfig
from daoship.dao import DAORegistry, DAORequest, ProposalRequest
from daoship.envelope import build_message
from daoship.errors import DAOShipError
from daoship.identity import LocalWallet
from daoship.ledger import HttpLedgerClient, SimulatedLedger
from daoship.orchestrator import TokenCreationOrchestrator, TokenCreationParams
from daoship.persistence import JsonFileStore, ResilientStore
from daoship.workflow import WorkflowSnapshot

STATUS_ICONS = {
    "pending": "[ ]",
    "running": "[~]",
    "succeeded": "[x]",
    "failed": "[!]",
}


def build_registry(config: DAOShipConfig) -> DAORegistry:
    store = ResilientStore(
        JsonFileStore(config.store_path),
        max_attempts=config.store_max_attempts,
        base_delay=config.store_base_delay_seconds,
    )
    return DAORegistry(store, max_age=timedelta(seconds=config.envelope_max_age_seconds))


def build_ledger(config: DAOShipConfig):
    if config.simulate:
        return SimulatedLedger()
    return HttpLedgerClient(config.ledger_api_url, api_key=config.ledger_api_key)


def build_orchestrator(config: DAOShipConfig, ledger) -> TokenCreationOrchestrator:
    return TokenCreationOrchestrator(
        ledger,
        required_address=config.required_creator_address,
        recipients=config.distribution_wallets,
        decimals=config.token_decimals,
        ledger_timeout=config.ledger_timeout_seconds,
        allow_simulated=config.simulate,
    )


def operator_wallet(config: DAOShipConfig) -> LocalWallet:
    if not config.wallet_private_key:
        raise SystemExit("DAOSHIP_WALLET_KEY is not set. Run: python main.py init")
    return LocalWallet(config.wallet_private_key)


def signed(wallet: LocalWallet, action: str, payload: dict, config: DAOShipConfig):
    """Build and sign the message authorizing one action."""
    message = build_message(action, payload, datetime.now(timezone.utc), chain_id=config.network)
    return message, wallet.sign(message)


def print_progress(snapshot: WorkflowSnapshot):
    current = snapshot.current_step
    if current:
        print(f"  {STATUS_ICONS['running']} {current.title}...")
    failed = snapshot.failed_step
    if failed:
        print(f"  {STATUS_ICONS['failed']} {failed.title}: {failed.error_detail}")


async def main():
    """Main entry point."""
    config = DAOShipConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if len(sys.argv) < 2:
        print(__doc__)
        print("\nQuick start:")
        print("  python main.py init")
        return

    command = sys.argv[1]
    registry = build_registry(config)

    if command == "init":
        wallet = LocalWallet()
        print("\n[OK] Operator wallet generated")
        print(f"\nAddress:     {wallet.address}")
        print(f"Public key:  {wallet.public_key_hex}")
        print("\nAdd to .env (keep it secret):")
        print(f"  DAOSHIP_WALLET_KEY={wallet.private_key_hex}")
        if wallet.address.lower() != config.required_creator_address.lower():
            print("\nNote: this wallet is not the required creator; it can register DAOs,")
            print("proposals and votes but cannot create governance tokens.")

    elif command == "status":
        stats = await registry.get_stats()

        print("\n=== DAOShip Status ===\n")
        print(f"Network:    {config.network}{' (simulated)' if config.simulate else ''}")
        print(f"Ledger:     {config.ledger_api_url}")
        print(f"Creator:    {config.required_creator_address}")
        print(f"Store:      {config.store_path}")
        print(f"\nRecords:")
        print(f"  DAOs:       {stats['total_daos']}")
        print(f"  Members:    {stats['total_members']}")
        print(f"  Proposals:  {stats['total_proposals']}")
        for status, count in sorted(stats["by_token_status"].items()):
            print(f"  Token {status}: {count}")

    elif command == "wallets":
        print(f"\n=== Distribution Wallets ({len(config.distribution_wallets)}) ===\n")
        for i, address in enumerate(config.distribution_wallets, start=1):
            print(f"  {i}. {address}")

    elif command == "plan":
        if len(sys.argv) < 3:
            print("Usage: python main.py plan <supply>")
            return

        plan = distribution.plan(int(sys.argv[2]), config.distribution_wallets)

        print(f"\n=== Distribution Plan ===\n")
        print(f"Total supply:   {plan.total_amount:,}")
        print(f"Recipients:     {plan.recipient_count}")
        print(f"Per recipient:  {plan.per_recipient_amount:,}")
        print(f"Retained:       {plan.remainder:,}")

    elif command == "create-dao":
        if len(sys.argv) < 3:
            print("Usage: python main.py create-dao <name> [description]")
            return

        wallet = operator_wallet(config)
        name = sys.argv[2]
        description = sys.argv[3] if len(sys.argv) > 3 else ""
        message, signature = signed(wallet, "createDAO",
                                    {"daoName": name, "creator": wallet.address}, config)

        dao = await registry.create_dao(
            DAORequest(name=name, description=description, creator=wallet.address),
            message, signature, wallet.public_key_hex,
        )
        print(f"\n[OK] DAO registered: {dao.dao_id}")
        print(f"Name:     {dao.name}")
        print(f"Manager:  {dao.manager}")

    elif command == "join":
        if len(sys.argv) < 3:
            print("Usage: python main.py join <dao_id> [address]")
            return

        member = sys.argv[3] if len(sys.argv) > 3 else operator_wallet(config).address
        dao = await registry.join_dao(sys.argv[2], member)
        print(f"\n[OK] {member} joined {dao.name}")
        print(f"Members:  {dao.member_count}")

    elif command == "members":
        if len(sys.argv) < 3:
            print("Usage: python main.py members <dao_id>")
            return

        members = await registry.get_members(sys.argv[2])
        print(f"\n=== Members ({len(members)}) ===\n")
        for i, address in enumerate(members, start=1):
            print(f"  {i}. {address}")

    elif command == "propose":
        if len(sys.argv) < 4:
            print("Usage: python main.py propose <dao_id> <title> [description]")
            return

        wallet = operator_wallet(config)
        dao_id, title = sys.argv[2], sys.argv[3]
        description = sys.argv[4] if len(sys.argv) > 4 else ""
        message, signature = signed(wallet, "createProposal",
                                    {"proposalTitle": title, "daoId": dao_id,
                                     "creator": wallet.address}, config)

        proposal = await registry.create_proposal(
            ProposalRequest(dao_id=dao_id, title=title, description=description,
                            creator=wallet.address),
            message, signature, wallet.public_key_hex,
        )
        print(f"\n[OK] Proposal opened: {proposal.proposal_id}")
        print(f"Voting ends: {proposal.end_time.isoformat()}")

    elif command == "vote":
        if len(sys.argv) < 4:
            print("Usage: python main.py vote <proposal_id> <yes|no|abstain> [power]")
            return

        wallet = operator_wallet(config)
        proposal_id, vote = sys.argv[2], sys.argv[3]
        power = int(sys.argv[4]) if len(sys.argv) > 4 else 1
        message, signature = signed(wallet, "voteOnProposal",
                                    {"proposalId": proposal_id, "voter": wallet.address,
                                     "vote": vote}, config)

        proposal = await registry.cast_vote(
            proposal_id, wallet.address, vote, message, signature,
            voting_power=power, public_key=wallet.public_key_hex,
        )
        print(f"\n[OK] Vote recorded")
        print(f"Yes: {proposal.yes_votes}  No: {proposal.no_votes}  Abstain: {proposal.abstain_votes}")
        print(f"Status: {proposal.status.value}")

    elif command == "execute":
        if len(sys.argv) < 3:
            print("Usage: python main.py execute <proposal_id> [tx_reference]")
            return

        wallet = operator_wallet(config)
        reference = sys.argv[3] if len(sys.argv) > 3 else None
        proposal = await registry.execute_proposal(sys.argv[2], wallet.address, reference)
        print(f"\n[OK] Proposal {proposal.proposal_id} executed")

    elif command == "create-token":
        if len(sys.argv) < 6:
            print("Usage: python main.py create-token <dao_id> <name> <symbol> <supply>")
            return

        wallet = operator_wallet(config)
        dao_id = sys.argv[2]
        dao = await registry.get_dao(dao_id)
        if dao is None:
            print(f"DAO not found: {dao_id}")
            return

        params = TokenCreationParams(
            dao_name=dao.name,
            token_name=sys.argv[3],
            token_symbol=sys.argv[4],
            initial_supply=int(sys.argv[5]),
        )

        ledger = build_ledger(config)
        orchestrator = build_orchestrator(config, ledger)
        print(f"\nCreating {params.token_name} ({params.token_symbol.upper()}) for {dao.name}...")
        if config.simulate:
            print("SIMULATED: nothing is submitted to a real ledger\n")

        try:
            result = await registry.create_token(dao_id, orchestrator, params, wallet,
                                                 on_progress=print_progress)
        finally:
            if isinstance(ledger, HttpLedgerClient):
                await ledger.aclose()

        print(f"\n=== Token Creation Result ===\n")
        print(f"Success:    {'Yes' if result.success else 'No'}")
        print(f"Outcome:    {result.outcome.value}")
        print(f"Token:      {result.token_reference or 'None'}")
        if result.error:
            print(f"Error:      {result.error} ({result.error_code})")
        if result.identity_check and result.identity_check.needs_reconnect:
            print(f"\n{result.identity_check.message()}")
        if result.distribution_result:
            print(f"\nDistribution:")
            for entry in result.distribution_result.entries:
                mark = STATUS_ICONS["succeeded"] if entry.succeeded else STATUS_ICONS["failed"]
                print(f"  {mark} {entry.recipient}: {entry.amount:,}"
                      f"{'' if entry.succeeded else ' - ' + (entry.error or 'failed')}")
        if not result.safe_to_retry and not result.success:
            print("\nA ledger action may have happened. Check the ledger before retrying.")

    elif command == "verify":
        if len(sys.argv) < 3:
            print("Usage: python main.py verify <token_reference>")
            return

        ledger = build_ledger(config)
        try:
            report = await build_orchestrator(config, ledger).verify_distribution(sys.argv[2])
        finally:
            if isinstance(ledger, HttpLedgerClient):
                await ledger.aclose()

        print(f"\n=== Distribution Check ===\n")
        for row in report["results"]:
            print(f"  {row['address']}: {row['balance']:,}{'  (' + row['error'] + ')' if row.get('error') else ''}")
        print(f"\n{report['wallets_with_tokens']}/{report['total_wallets']} wallets hold tokens")

    else:
        print(f"Unknown command: {command}")
        print("Use 'python main.py' for help")


def cli():
    try:
        asyncio.run(main())
    except DAOShipError as e:
        print(f"\nError: {e.reason} ({e.code})")
        sys.exit(1)


if __name__ == "__main__":
    cli()
