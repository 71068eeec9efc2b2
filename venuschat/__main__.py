"""
VenusChat CLI entry point.

Provides the server command plus storage and billing maintenance utilities.
"""

import argparse
import asyncio
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

from venuschat import __version__
from venuschat.config.logging import get_logger, setup_logging
from venuschat.config.settings import Settings, load_settings


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="venuschat",
        description="Streaming conversation orchestration engine for a chat front end",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"VenusChat {__version__}",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level from config",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: SERVER__HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default: SERVER__PORT)")

    subparsers.add_parser("config", help="Show current configuration")

    chat_parser = subparsers.add_parser(
        "chat",
        help="Stream one answer to stdout through the full pipeline",
    )
    chat_parser.add_argument("prompt", help='Message to send, e.g. "What\'s the weather in Paris?"')
    chat_parser.add_argument("--user", default="cli", help="User id to bill and save as (default: cli)")
    chat_parser.add_argument("--model-id", default=None, help="User model id (default: preset model)")
    chat_parser.add_argument("--conversation", default=None, help="Conversation id to append the turn to")
    chat_parser.add_argument("--web-search", action="store_true", help="Enable the webSearch tool")
    chat_parser.add_argument("--no-thinking", action="store_true", help="Disable the thinkingStep tool")
    chat_parser.add_argument(
        "--quick",
        action="store_true",
        help="Use the lightweight step limit (CHAT__LIGHTWEIGHT_MAX_STEPS)",
    )

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("seed-pricing", help="Insert the default pricing rules that are missing")

    reset_parser = subparsers.add_parser("reset-usage", help="Reset daily and/or monthly spend counters")
    reset_parser.add_argument(
        "--period",
        choices=["daily", "monthly", "both"],
        default="daily",
        help="Which counters to reset (default: daily)",
    )

    credits_parser = subparsers.add_parser("add-credits", help="Top up a user's credits")
    credits_parser.add_argument("user", help="User id")
    credits_parser.add_argument("amount", help="Amount to add, e.g. 5.00")
    credits_parser.add_argument("--description", default="Manual top-up", help="Billing record description")

    return parser


def cmd_config(settings: Settings) -> int:
    """Show current configuration."""
    logger = get_logger(__name__)

    logger.info("\n=== VenusChat Configuration ===\n")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info(f"Log File: {settings.log_file or 'None (console only)'}")
    logger.info(f"\nPreset Model: {settings.llm.provider}/{settings.llm.model}")
    logger.info(f"LLM API Key: {'Set' if settings.llm.api_key else 'Not set'}")
    logger.info(f"LLM Base URL: {settings.llm.base_url or 'provider default'}")
    logger.info(f"\nMax Steps: {settings.chat.max_steps} (lightweight: {settings.chat.lightweight_max_steps})")
    logger.info(f"Stream Timeout: {settings.chat.stream_timeout_seconds}s")
    logger.info(f"Compression Threshold: {settings.chat.compression_threshold} tokens")
    logger.info(f"\nDatabase: {settings.database.url}")
    logger.info(f"Redis: {settings.cache.redis_url or 'None (in-memory cache)'}")
    logger.info(f"SerpAPI Key: {'Set' if settings.search.serpapi_api_key else 'Not set'}")
    logger.info(f"\nServer: {settings.server.host}:{settings.server.port}")

    return 0


def cmd_serve(args, settings: Settings) -> int:
    """Run the API server."""
    import uvicorn

    from venuschat.api import create_app

    logger = get_logger(__name__)
    if not settings.llm.api_key:
        logger.warning(
            "LLM API key not set (LLM__API_KEY). "
            "The server will start but preset-model chats will fail until this is configured."
        )

    host = args.host or settings.server.host
    port = args.port or settings.server.port
    logger.info(f"Starting VenusChat on {host}:{port}...")
    # log_config=None: keep our logging setup
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)
    return 0


def _database(settings: Settings):
    from venuschat.db import Database

    db = Database.from_settings(settings.database)
    db.create_all()
    return db


async def cmd_chat(args, settings: Settings) -> int:
    """
    Send one message through the full pipeline and print the stream.

    Uses the same ChatService as the HTTP endpoint, so billing checks,
    persistence (with --conversation) and compression all apply.
    """
    from venuschat.cache import create_context_cache
    from venuschat.chat.errors import ChatError
    from venuschat.chat.messages import ChatMessage, ChatRequest, TextPart
    from venuschat.chat.service import ChatService

    logger = get_logger(__name__)

    request = ChatRequest(
        messages=[ChatMessage(role="user", parts=[TextPart(text=args.prompt)])],
        model_id=args.model_id,
        conversation_id=args.conversation,
        web_search=args.web_search,
        enable_thinking=not args.no_thinking,
    )
    service = ChatService(settings, _database(settings), create_context_cache(settings.cache))

    try:
        prepared = await service.prepare(args.user, request, lightweight=args.quick)
        if prepared.is_image:
            result = await service.generate_image(prepared)
            print(result["content"][1]["text"])
            image = result["content"][0]["image"]
            print(image if len(image) < 200 else f"{image[:200]}...")
            return 0

        exit_code = 0
        async for event in service.stream(prepared):
            if event.type == "text-delta":
                print(event.delta, end="", flush=True)
            elif event.type == "tool-call":
                print(f"\n[tool] {event.tool_name}({event.input})", flush=True)
            elif event.type == "finish":
                metadata = event.message_metadata
                print(f"\n\n--- finish: {event.finish_reason} ---")
                for citation in metadata.citations or []:
                    print(f"  [{citation.id}] {citation.title} - {citation.url}")
                print(
                    f"Tokens: {metadata.total_tokens} "
                    f"(input {metadata.input_tokens} + output {metadata.output_tokens})"
                )
            elif event.type == "error":
                print(f"\nError: {event.error_text}", file=sys.stderr)
                exit_code = 1
        return exit_code

    except ChatError as e:
        print(f"Error ({e.status_code}): {e.message}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Chat failed: {e}", exc_info=True)
        return 1
    finally:
        await service.close()


async def cmd_seed_pricing(settings: Settings) -> int:
    from venuschat.chat.billing import BillingGate

    created = await BillingGate(_database(settings), settings.billing).seed_pricing()
    print(f"Created {created} pricing rule(s)")
    return 0


async def cmd_reset_usage(args, settings: Settings) -> int:
    from venuschat.chat.billing import BillingGate

    gate = BillingGate(_database(settings), settings.billing)
    if args.period in ("daily", "both"):
        print(f"Daily counters reset for {await gate.reset_daily_usage()} account(s)")
    if args.period in ("monthly", "both"):
        print(f"Monthly counters reset for {await gate.reset_monthly_usage()} account(s)")
    return 0


async def cmd_add_credits(args, settings: Settings) -> int:
    from venuschat.chat.billing import BillingGate

    try:
        amount = Decimal(args.amount)
    except InvalidOperation:
        print(f"Invalid amount: {args.amount!r}", file=sys.stderr)
        return 1

    gate = BillingGate(_database(settings), settings.billing)
    try:
        snapshot = await gate.add_credits(args.user, amount, args.description)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"User {args.user} now has {snapshot.credits} credits")
    return 0


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    # Load settings
    try:
        settings = load_settings(env_file=args.env_file)
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    # Override log level if specified
    if args.log_level:
        settings.log_level = args.log_level

    setup_logging(settings)

    if args.command == "config":
        return cmd_config(settings)
    elif args.command == "serve":
        return cmd_serve(args, settings)
    elif args.command == "chat":
        return asyncio.run(cmd_chat(args, settings))
    elif args.command == "init-db":
        _database(settings)
        print("Database initialized")
        return 0
    elif args.command == "seed-pricing":
        return asyncio.run(cmd_seed_pricing(settings))
    elif args.command == "reset-usage":
        return asyncio.run(cmd_reset_usage(args, settings))
    elif args.command == "add-credits":
        return asyncio.run(cmd_add_credits(args, settings))
    else:
        # Default: show help
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
