"""
Helper to check and pair the Bitrix24 Open Line <-> WhatsApp connector by hand.

Usage:
    python -m scripts.openline_setup diag
    python -m scripts.openline_setup instances
    python -m scripts.openline_setup lines
    python -m scripts.openline_setup status --line 15
    python -m scripts.openline_setup connect --line 15 [--number 5511999999999]
    python -m scripts.openline_setup bind --line 15 --instance evo_line_15
    python -m scripts.openline_setup test-send --line 15 --to 5511999999999

Set API_MODE=mock to run against canned responses.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict, replace
from typing import Any

from connector.bindings import BindingCoordinator, BindingStatus, describe
from connector.config import AppConfig, load_config
from connector.errors import ConnectorError
from connector.gateway import GatewayClient, extract_state
from connector.bitrix import BitrixClient
from main import build_stores, build_transport


def _dump(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, default=str))


async def _run(args: argparse.Namespace, config: AppConfig) -> None:
    transport = build_transport(config)
    gateway = GatewayClient(transport, timeout=config.request_timeout)
    bitrix = BitrixClient(transport, timeout=config.request_timeout)
    binding_store, _, pool = await build_stores(config)
    coordinator = BindingCoordinator(config.tenant_id, binding_store, gateway, poll_config=config.poll)
    try:
        if args.command == "diag":
            _dump((await gateway.diag()).unwrap())
            _dump((await bitrix.token_status()).unwrap())
        elif args.command == "instances":
            instances = (await gateway.list_instances()).unwrap()
            print(f"✅ Instances found: {len(instances)}")
            _dump([asdict(item) for item in instances])
        elif args.command == "lines":
            lines = (await bitrix.list_lines()).unwrap()
            print(f"✅ Open lines found: {len(lines)}")
            _dump([asdict(line) for line in lines])
        elif args.command == "status":
            status = (await gateway.get_status_for_line(args.line)).unwrap()
            print(f"State: {extract_state(status) or 'unknown'}")
            _dump(status)
        elif args.command == "bind":
            _dump(describe((await coordinator.bind(args.line, args.instance)).unwrap()))
            _dump((await gateway.bind_openline(args.line, args.instance)).unwrap())
        elif args.command == "test-send":
            _dump((await gateway.test_send(args.line, args.to, args.text)).unwrap())
        elif args.command == "connect":
            await _connect(coordinator, args.line, args.number)
    finally:
        await coordinator.stop_all()
        await transport.close()
        if pool is not None:
            await pool.close()


async def _connect(coordinator: BindingCoordinator, line_id: str, number: str | None) -> None:
    (await coordinator.ensure(line_id)).unwrap()
    binding = (await coordinator.start(line_id, number)).unwrap()
    if binding.pairing_code:
        print("📱 Pairing code received; scan it in WhatsApp > Linked devices.")
        print(binding.pairing_code[:80] + ("..." if len(binding.pairing_code) > 80 else ""))
    poller = coordinator.poller(line_id)
    if poller is not None and poller.task is not None:
        print("⏳ Waiting for the session to connect...")
        result = await poller.task
        print(f"Poll finished: {result.state.value} after {result.ticks} checks")
    final = (await coordinator.get(line_id)).unwrap()
    if final is not None:
        mark = "✅" if final.status is BindingStatus.OPEN else "⚠️"
        print(f"{mark} Line {line_id}: {final.status.value}")
        _dump(describe(final))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bitrix24 Open Line <-> WhatsApp setup helper.")
    parser.add_argument("--mock", action="store_true", help="Use canned responses (API_MODE=mock)")
    parser.add_argument("--verbose", action="store_true", help="Log transport attempts")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("diag", help="Check gateway and CRM token status")
    sub.add_parser("instances", help="List gateway instances")
    sub.add_parser("lines", help="List CRM open lines")
    status = sub.add_parser("status", help="Show the session state for a line")
    status.add_argument("--line", required=True)
    connect = sub.add_parser("connect", help="Create the binding and pair a line")
    connect.add_argument("--line", required=True)
    connect.add_argument("--number", help="Phone number for pairing-code login")
    bind = sub.add_parser("bind", help="Bind a line to an existing instance")
    bind.add_argument("--line", required=True)
    bind.add_argument("--instance", required=True)
    send = sub.add_parser("test-send", help="Send a test message through a line")
    send.add_argument("--line", required=True)
    send.add_argument("--to", required=True)
    send.add_argument("--text", default="Ping")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    config = load_config()
    if args.mock:
        config = replace(config, mode="mock")
    if not config.base_url and config.mode == "real":
        raise SystemExit("Set FUNCTIONS_BASE_URL or SUPABASE_URL in .env (or pass --mock).")
    try:
        asyncio.run(_run(args, config))
    except ConnectorError as exc:
        raise SystemExit(f"❌ {exc.kind.value}: {exc}") from exc


if __name__ == "__main__":
    main()
