import argparse
import asyncio
import json
import logging
import uuid

import uvicorn

from centralhub import config
from centralhub.callbacks import AgentClient
from centralhub.channel import MemoryChannel, build_channel
from centralhub.classifier import TEST_TYPE, format_message
from centralhub.cycle.orchestrator import run_cycle
from centralhub.db import crud
from centralhub.db.database import get_db, close_db

logger = logging.getLogger("centralhub")


async def _run_once() -> dict:
    db = await get_db()
    channel = build_channel()
    if isinstance(channel, MemoryChannel):
        logger.warning("Memory channel backend is empty in a fresh process; set CENTRALHUB_CHANNEL_BACKEND=chat")
    try:
        async with AgentClient() as agents:
            report = await run_cycle(db, channel, agents)
    finally:
        await channel.aclose()
        await close_db()
    return report.to_dict()


async def _status() -> dict:
    db = await get_db()
    try:
        return {
            "results": await crud.result_counts(db),
            "pending_requests": len(await crud.pending_list(db)),
            "agents": [{"name": a.name, "status": a.status, "callback_url": a.callback_url}
                       for a in await crud.agent_list(db)],
        }
    finally:
        await close_db()


async def _test_message(user: str, conversation_id: str | None) -> dict:
    conversation_id = conversation_id or f"test-{uuid.uuid4().hex[:8]}"
    channel = build_channel()
    try:
        message_id = await channel.append(
            format_message(user, conversation_id, TEST_TYPE, body="Connectivity test from the hub.")
        )
    finally:
        await channel.aclose()
    return {"message_id": message_id, "conversation_id": conversation_id}


async def _deactivate(name: str) -> dict:
    db = await get_db()
    try:
        ok = await crud.agent_deactivate(db, name)
        if ok:
            await crud.activity_log(db, "agent.deactivated", name)
        return {"ok": ok}
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(prog="centralhub", description="Run the CentralHub coordinator")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP server and the recurring cycle")
    serve.add_argument("--host", default=config.HOST, help="Bind host")
    serve.add_argument("--port", type=int, default=config.PORT, help="Bind port")
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    sub.add_parser("run-once", help="Run a single cycle now and print its report")
    sub.add_parser("status", help="Print result, pending and agent counts")

    test = sub.add_parser("test-message", help="Post a TEST conversation for an agent")
    test.add_argument("user")
    test.add_argument("--conversation-id", default=None)

    deactivate = sub.add_parser("deactivate", help="Deactivate a registered agent")
    deactivate.add_argument("name")

    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command in (None, "serve"):
        uvicorn.run(
            "centralhub.main:app",
            host=getattr(args, "host", config.HOST),
            port=getattr(args, "port", config.PORT),
            reload=getattr(args, "reload", False),
            log_level="info",
            timeout_graceful_shutdown=3,
        )
        return

    if args.command == "run-once":
        out = asyncio.run(_run_once())
    elif args.command == "status":
        out = asyncio.run(_status())
    elif args.command == "test-message":
        out = asyncio.run(_test_message(args.user, args.conversation_id))
    else:
        out = asyncio.run(_deactivate(args.name))
    print(json.dumps(out, indent=2, default=str))


if __name__ == "__main__":
    main()
