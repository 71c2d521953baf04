import argparse
import asyncio
import sys
from pathlib import Path

# Allow running as `python scripts/prd_cli.py` from the project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from core.config import get_settings
from core.errors import PRDError
from services.prd_service import DraftView, PRDService
from services.storage import ApiKeyStore

class ConsoleView(DraftView):
    """Echoes streamed fragments to stdout."""

    def append(self, fragment: str) -> None:
        super().append(fragment)
        sys.stdout.write(fragment)
        sys.stdout.flush()

def _read_optional(path):
    return Path(path).read_text(encoding="utf-8") if path else None

def parse_args(argv=None):
    """Parses command-line arguments."""
    parser = argparse.ArgumentParser(description="Generate and refine PRDs from the command line.")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate a new PRD.")
    gen.add_argument("requirements", help="Project requirements in plain language.")
    gen.add_argument("--platform", default="cursor", help="Target platform (cursor, lovable, replit, ...).")
    gen.add_argument("--context-file", help="File with existing project context.")
    gen.add_argument("--user", help="Owner id. Without it the PRD is not saved.")
    gen.add_argument("--output", help="Also write the PRD to this file.")

    ref = sub.add_parser("refine", help="Refine an existing PRD with additional requirements.")
    ref.add_argument("prd_file", help="Markdown file with the PRD to refine.")
    ref.add_argument("additional_requirements")
    ref.add_argument("--platform", default="cursor")
    ref.add_argument("--context-file")
    ref.add_argument("--user")
    ref.add_argument("--output")

    hist = sub.add_parser("history", help="List saved PRDs of a user, newest first.")
    hist.add_argument("--user", required=True)

    keys = sub.add_parser("keys", help="Manage stored provider API keys.")
    keys_sub = keys.add_subparsers(dest="keys_command", required=True)
    add = keys_sub.add_parser("add")
    add.add_argument("key_type", help="openai, google, anthropic or gateway")
    add.add_argument("api_key")
    add.add_argument("--user", help="Store for this user instead of globally.")
    lst = keys_sub.add_parser("list")
    lst.add_argument("--user")
    rm = keys_sub.add_parser("remove")
    rm.add_argument("key_id")

    return parser.parse_args(argv)

async def _run_generation(service: PRDService, args) -> int:
    view = ConsoleView()
    context = _read_optional(args.context_file)
    if args.command == "generate":
        result = await service.generate(args.requirements, args.platform, context, owner_id=args.user, view=view)
    else:
        existing = Path(args.prd_file).read_text(encoding="utf-8")
        result = await service.refine(
            existing, args.additional_requirements, args.platform, context, owner_id=args.user, view=view
        )
    sys.stdout.write("\n")
    if args.output:
        Path(args.output).write_text(result.content, encoding="utf-8")
    if result.record:
        print(f"Saved as {result.record.id} ({result.record.title})", file=sys.stderr)
    return 0

async def _run_keys(config, args) -> int:
    store = ApiKeyStore(config.app.DATABASE_PATH)
    if args.keys_command == "add":
        record = await store.save_key(args.key_type, args.api_key, user_id=args.user)
        scope = f"user {record.user_id}" if record.user_id else "global"
        print(f"Stored {record.key_type} key {record.id} ({scope})")
    elif args.keys_command == "list":
        records = await store.user_keys(args.user) if args.user else await store.global_keys()
        for record in records:
            print(f"{record.id}  {record.key_type:<10} {record.api_key[:6]}...  {record.created_at:%Y-%m-%d}")
    elif args.keys_command == "remove":
        if not await store.delete_key(args.key_id):
            print(f"No API key with id {args.key_id}", file=sys.stderr)
            return 1
        print(f"Removed {args.key_id}")
    return 0

async def run(args) -> int:
    config = get_settings()
    if args.command == "keys":
        return await _run_keys(config, args)

    service = PRDService.from_config(config)
    try:
        if args.command == "history":
            for record in await service.history(args.user):
                print(f"{record.created_at:%Y-%m-%d %H:%M}  {record.platform:<8} {record.id}  {record.title}")
            return 0
        return await _run_generation(service, args)
    finally:
        await service.aclose()

def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except PRDError as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1

if __name__ == "__main__":
    sys.exit(main())
