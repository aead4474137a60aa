"""
tenant-relay command line.

  python -m tenant_relay serve quickbooks --port 8001
  python -m tenant_relay mint-token --tenant u1 --audience quickbooks-mcp
  python -m tenant_relay chat --tenant u1 "How much does Acme owe us?"
  python -m tenant_relay store-credential --tenant u1 --provider housecallpro --access-token hcp_key
  python -m tenant_relay disconnect --tenant u1 --provider quickbooks
  python -m tenant_relay list-expiring --within 3600

Credential commands only make sense with TOKEN_STORE_BACKEND=postgres; the
in-memory store does not outlive the process.
"""

from __future__ import annotations

import argparse
import asyncio
import inspect
import json
import sys
from typing import Any

import structlog

from tenant_relay.config import get_settings
from tenant_relay.connectors.auth.token_store import PostgresTokenStore, TokenStore, create_token_store
from tenant_relay.kernel.errors import RelayError
from tenant_relay.kernel.logging import configure_logging
from tenant_relay.tools import TOOL_SERVERS

logger = structlog.get_logger()


def _print_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, default=str) + "\n")
    sys.stdout.flush()


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from tenant_relay.mcp.app import create_app

    app = create_app(args.server)
    uvicorn.run(app, host=args.host, port=int(args.port), log_config=None)
    return 0


def cmd_mint_token(args: argparse.Namespace) -> int:
    from tenant_relay.auth.session_jwt import SessionTokenIssuer

    issuer = SessionTokenIssuer.from_settings()
    token = issuer.mint(args.tenant, args.audience, ttl_seconds=args.ttl)
    sys.stdout.write(token + "\n")
    return 0


async def cmd_chat(args: argparse.Namespace, store: TokenStore) -> int:
    from tenant_relay.auth.session_jwt import SessionTokenIssuer
    from tenant_relay.orchestrator.chat import ChatOrchestrator

    orchestrator = ChatOrchestrator(SessionTokenIssuer.from_settings(), store)
    reply = await orchestrator.chat(args.tenant, args.message)
    _print_json(reply.model_dump())
    return 0


async def cmd_store_credential(args: argparse.Namespace, store: TokenStore) -> int:
    from tenant_relay.connectors.auth.token_store import CredentialRecord

    await store.upsert(
        CredentialRecord(
            tenant_id=args.tenant,
            provider=args.provider,
            access_token=args.access_token,
            refresh_token=args.refresh_token,
            provider_account_id=args.account_id,
            expires_at=args.expires_at,
        )
    )
    _print_json({"stored": True, "tenant_id": args.tenant, "provider": args.provider})
    return 0


async def cmd_disconnect(args: argparse.Namespace, store: TokenStore) -> int:
    from tenant_relay.connectors.auth.oauth2 import configure_oauth

    manager = configure_oauth(store)
    deleted = await manager.disconnect(args.tenant, args.provider)
    _print_json({"deleted": deleted, "tenant_id": args.tenant, "provider": args.provider})
    return 0 if deleted else 1


async def cmd_list_expiring(args: argparse.Namespace, store: TokenStore) -> int:
    for record in await store.list_expiring(within_seconds=int(args.within)):
        _print_json(
            {
                "tenant_id": record.tenant_id,
                "provider": record.provider,
                "expires_at": record.expires_at,
                "refreshable": record.can_refresh,
            }
        )
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tenant-relay", description="Multi-tenant MCP tool servers")
    sub = parser.add_subparsers(dest="cmd", required=True)

    serve_p = sub.add_parser("serve", help="Run one tool server")
    serve_p.add_argument("server", choices=sorted(TOOL_SERVERS))
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8000)
    serve_p.set_defaults(func=cmd_serve)

    mint_p = sub.add_parser("mint-token", help="Mint a session token for a tool server audience")
    mint_p.add_argument("--tenant", required=True)
    mint_p.add_argument("--audience", required=True, choices=sorted(d.audience for d in TOOL_SERVERS.values()))
    mint_p.add_argument("--ttl", type=int, default=None)
    mint_p.set_defaults(func=cmd_mint_token)

    chat_p = sub.add_parser("chat", help="Send one chat message through the orchestrator")
    chat_p.add_argument("--tenant", required=True)
    chat_p.add_argument("message")
    chat_p.set_defaults(func=cmd_chat)

    store_p = sub.add_parser("store-credential", help="Store a credential for a tenant and provider")
    store_p.add_argument("--tenant", required=True)
    store_p.add_argument("--provider", required=True)
    store_p.add_argument("--access-token", required=True)
    store_p.add_argument("--refresh-token", default=None)
    store_p.add_argument("--account-id", default=None)
    store_p.add_argument("--expires-at", type=int, default=None)
    store_p.set_defaults(func=cmd_store_credential)

    disconnect_p = sub.add_parser("disconnect", help="Delete a tenant's credential for a provider")
    disconnect_p.add_argument("--tenant", required=True)
    disconnect_p.add_argument("--provider", required=True)
    disconnect_p.set_defaults(func=cmd_disconnect)

    expiring_p = sub.add_parser("list-expiring", help="List credentials expiring soon")
    expiring_p.add_argument("--within", type=int, default=3600)
    expiring_p.set_defaults(func=cmd_list_expiring)

    return parser


def main(argv: list[str] | None = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings)

    if not inspect.iscoroutinefunction(args.func):
        return args.func(args)

    async def _run() -> int:
        store = create_token_store(settings)
        needs_db = isinstance(store, PostgresTokenStore)
        if needs_db:
            from tenant_relay.db.client import close_db, init_db

            await init_db()
        try:
            if needs_db:
                await store.ensure_schema()
            return await args.func(args, store)
        except RelayError as exc:
            logger.error("Command failed", cmd=args.cmd, code=exc.code, error=exc.message)
            _print_json(exc.to_public_dict(request_id=None))
            return 1
        finally:
            if needs_db:
                await close_db()

    return asyncio.run(_run())


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
