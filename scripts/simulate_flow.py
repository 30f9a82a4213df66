#!/usr/bin/env python3
"""
Flow Simulator — chat with a flow definition in the terminal.

Runs the flow engine against the in-memory store and the console channel,
so no database, WhatsApp account or HTTP endpoint is needed. ai-query
nodes use the configured LLM provider (mock unless an API key is set).

Usage:
    python scripts/simulate_flow.py scripts/sample_flow.json
    python scripts/simulate_flow.py my_flow.json --contact +15550001 --debug
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv


async def run(flow_path: str, contact: str, debug: bool):
    from config.settings import load_settings
    settings = load_settings()

    from utils.logging import configure_logging
    configure_logging(debug=debug, json_logs=False)

    from channels.base import ChannelRegistry
    from channels.console_adapter import ConsoleAdapter
    from core.engine import FlowEngine
    from database.store_memory import InMemoryFlowStore
    from flows.graph import validate_graph
    from models.schemas import Flow, FlowStatus

    with open(flow_path) as f:
        flow = Flow.from_json(json.load(f))
    flow = flow.model_copy(update={"status": FlowStatus.ACTIVE})

    errors = validate_graph(flow.graph)
    for err in errors:
        print(f"warning: {err}")

    store = InMemoryFlowStore()
    await store.save_flow(flow)

    registry = ChannelRegistry(default=ConsoleAdapter(writer=lambda text: print(f"bot> {text}")))
    engine = FlowEngine(store, registry, settings=settings)

    keywords = ", ".join(flow.trigger.keywords) if flow.trigger else "(no trigger)"
    print(f"Flow '{flow.name or flow.id}' loaded. Trigger: {flow.trigger.match.value if flow.trigger else '-'} {keywords}")
    print("Type a message, '/reset' to abandon the conversation, '/quit' to exit.")

    loop = asyncio.get_running_loop()
    while True:
        try:
            text = await loop.run_in_executor(None, input, "you> ")
        except EOFError:
            break
        text = text.strip()
        if text == "/quit":
            break
        if text == "/reset":
            await engine.reset_session(flow.user_id, contact)
            print("(conversation reset)")
            continue
        await engine.process_message(flow.user_id, contact, text)
        if await store.get_session(flow.user_id, contact) is None:
            print("(no active conversation)")

    await registry.shutdown_all()
    await engine.executor.http.close()


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Run a flow interactively in the terminal")
    parser.add_argument("flow", help="Path to a flow JSON file")
    parser.add_argument("--contact", default="+15550000000", help="Contact address to simulate")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    asyncio.run(run(args.flow, args.contact, args.debug))


if __name__ == "__main__":
    main()
