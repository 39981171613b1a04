"""
Operator CLI for CompanionAI.

Architectural role:
- Terminal access to the same pipeline the HTTP API uses.
- Out-of-band maintenance: companion registration and document ingestion.

Commands:
- `ingest FILE --companion-id ID`: chunk a text file into the companion's
  vector namespace.
- `add-companion JSON_FILE`: register a companion from a JSON document with
  `name`, `instructions`, `seed` and optional `description` / `id`.
- `chat --companion-id ID --user-id U --user-name N`: interactive chat loop.

Error handling strategy:
- Fatal pipeline errors are printed as one-line messages; the loop continues.
- EOF and keyboard interrupts end the session without traceback output.
"""

import argparse
import asyncio
import json
import sys

from companionai.config import Settings
from companionai.core.pipeline import ChatPipeline, Identity
from companionai.errors import CompanionAIError
from companionai.ingestion.ingest_documents import ingest_file
from companionai.logging_config import setup_logging
from companionai.memory.conversation_log import ConversationLog
from companionai.memory.memory_manager import MemoryManager
from companionai.ratelimit.limiter import RateLimiter


CLI_REQUEST_URL = "cli://chat"


def cmd_ingest(args, settings: Settings) -> int:
    memory = MemoryManager.get_instance(settings)
    try:
        stored = ingest_file(args.filepath, args.companion_id, memory.vector_index, max_words=args.max_words)
    except (FileNotFoundError, ValueError) as e:
        print(f"Ingestion failed: {e}")
        return 1
    print(f"{stored} chunks stored.")
    return 0


def cmd_add_companion(args, settings: Settings) -> int:
    with open(args.json_file, "r", encoding="utf-8") as f:
        data = json.load(f)

    missing = [name for name in ("name", "instructions", "seed") if not data.get(name)]
    if missing:
        print(f"Missing required fields: {', '.join(missing)}")
        return 1

    log = ConversationLog(settings.conversation_db_path)
    companion = log.add_companion(
        name=data["name"],
        instructions=data["instructions"],
        seed=data["seed"],
        description=data.get("description", ""),
        user_id=data.get("user_id"),
        companion_id=data.get("id"),
    )
    print(companion.id)
    return 0


async def _chat_loop(pipeline: ChatPipeline, companion_id: str, identity: Identity) -> None:
    while True:
        try:
            prompt = (await asyncio.to_thread(input, "You: ")).strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return

        if not prompt:
            continue
        if prompt.lower() in ("exit", "quit"):
            return

        try:
            turn = await pipeline.handle(companion_id, prompt, identity, CLI_REQUEST_URL)
        except CompanionAIError as e:
            print(f"[{type(e).__name__}] {e}")
            continue

        name = turn.companion.name if turn.companion else companion_id
        chunks = [chunk.decode("utf-8") async for chunk in pipeline.stream_response(turn)]
        print(f"{name}: {''.join(chunks)}\n")


def cmd_chat(args, settings: Settings) -> int:
    pipeline = ChatPipeline(
        memory=MemoryManager.get_instance(settings),
        conversation_log=ConversationLog(settings.conversation_db_path),
        rate_limiter=RateLimiter.from_settings(settings),
        settings=settings,
    )
    identity = Identity(user_id=args.user_id, display_name=args.user_name)

    print("Companion chat started. (Type 'exit' to quit)\n")
    asyncio.run(_chat_loop(pipeline, args.companion_id, identity))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="companionai", description="CompanionAI operator CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Index a text file for a companion")
    ingest.add_argument("filepath")
    ingest.add_argument("--companion-id", required=True)
    ingest.add_argument("--max-words", type=int, default=300)
    ingest.set_defaults(func=cmd_ingest)

    add = sub.add_parser("add-companion", help="Register a companion from JSON")
    add.add_argument("json_file")
    add.set_defaults(func=cmd_add_companion)

    chat = sub.add_parser("chat", help="Chat with a companion in the terminal")
    chat.add_argument("--companion-id", required=True)
    chat.add_argument("--user-id", required=True)
    chat.add_argument("--user-name", required=True)
    chat.set_defaults(func=cmd_chat)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    setup_logging(settings)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
