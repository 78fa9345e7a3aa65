#!/usr/bin/env python3
"""Bookkeeping assistant memory CLI."""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone

from config.logging_config import setup_logging
from config.settings import Settings
from conversation.store import ConversationStore
from database.errors import DatabaseError
from database.factory import create_database_provider
from memory.manager import MemoryManager


def _format_ms(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


async def init_storage(settings: Settings) -> None:
    """Create the SQLite schema or the DynamoDB table."""
    settings.dynamodb_create_table = True
    async with create_database_provider(settings.database_config()):
        pass
    print(f"Storage ready ({settings.database_provider.value})")


async def show_sessions(settings: Settings, user_id: str, limit: int) -> None:
    async with create_database_provider(settings.database_config()) as provider:
        sessions = await ConversationStore(provider).list_sessions(user_id, limit=limit)

    if not sessions:
        print(f"No sessions for user {user_id}")
        return

    for session in sessions:
        status = " (expired)" if session.is_expired() else ""
        print(
            f"{session.session_id}  created {_format_ms(session.created_at)}  "
            f"{len(session.messages)} messages{status}"
        )


async def show_history(settings: Settings, user_id: str, session_id: str, limit: int) -> None:
    async with create_database_provider(settings.database_config()) as provider:
        messages = await ConversationStore(provider).get_recent_messages(user_id, session_id, limit=limit)

    if not messages:
        print(f"No messages in session {session_id}")
        return

    for message in messages:
        print(f"{message.role.value.upper()}: {message.content}")


async def show_memory(settings: Settings, user_id: str, limit: int) -> None:
    async with create_database_provider(settings.database_config()) as provider:
        manager = MemoryManager(provider)
        core = await manager.get_core_memory(user_id)
        extended = await manager.get_extended_memory(user_id, limit=limit)

    print("=" * 60)
    print(f"CORE MEMORY: {user_id}")
    print("=" * 60)
    if core is None:
        print("(none)")
    else:
        print(json.dumps(core.to_wire(exclude_none=True), indent=2))

    print("\n" + "=" * 60)
    print(f"EXTENDED MEMORY ({len(extended)})")
    print("=" * 60)
    for memory in extended:
        topics = ", ".join(memory.topics) or "-"
        print(f"[{_format_ms(memory.created_at)}] {memory.conversation_summary}  (topics: {topics})")


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Inspect conversation sessions and memory for the bookkeeping assistant"
    )
    parser.add_argument(
        "--provider",
        type=str,
        choices=["embedded-file", "managed-kv", "relational"],
        help="Storage backend (default: DATABASE_PROVIDER or embedded-file)"
    )
    parser.add_argument(
        "--database-path",
        type=str,
        help="SQLite database file (default: DATABASE_PATH or data/app.db)"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create the storage schema or table")

    sessions_parser = subparsers.add_parser("sessions", help="List a user's sessions")
    sessions_parser.add_argument("--user", "-u", required=True, help="User ID")
    sessions_parser.add_argument("--limit", type=int, default=10, help="Maximum sessions (default: 10)")

    history_parser = subparsers.add_parser("history", help="Show a session's recent messages")
    history_parser.add_argument("--user", "-u", required=True, help="User ID")
    history_parser.add_argument("--session", "-s", required=True, help="Session ID")
    history_parser.add_argument("--limit", type=int, default=10, help="Maximum messages (default: 10)")

    memory_parser = subparsers.add_parser("memory", help="Show a user's core and extended memory")
    memory_parser.add_argument("--user", "-u", required=True, help="User ID")
    memory_parser.add_argument("--limit", type=int, default=10, help="Maximum extended memories (default: 10)")

    args = parser.parse_args()

    settings = Settings(
        database_provider=args.provider,
        database_path=args.database_path,
    )
    setup_logging("DEBUG" if args.verbose else None, settings=settings)

    if args.command == "init":
        command = init_storage(settings)
    elif args.command == "sessions":
        command = show_sessions(settings, args.user, args.limit)
    elif args.command == "history":
        command = show_history(settings, args.user, args.session, args.limit)
    else:
        command = show_memory(settings, args.user, args.limit)

    try:
        asyncio.run(command)
    except DatabaseError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
