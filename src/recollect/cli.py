"""CLI commands for managing stored memory.

Provides subcommands for statistics, listing, searching and editing facts,
plus maintenance (clear, reembed) and a context preview.
"""

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable

from .config import load_config
from .errors import RecollectError
from .memory import MemoryManager, Scope

AsyncCommand = Callable[[MemoryManager, argparse.Namespace], Awaitable[int]]


def _get_manager() -> MemoryManager:
    """Create a MemoryManager with config loaded from disk."""
    return MemoryManager.from_config(load_config())


def _scope(args: argparse.Namespace) -> Scope:
    project = getattr(args, "project", None)
    if project:
        return Scope.for_project(project)
    return Scope.everything()


def _format_scope(project_id: str | None) -> str:
    return project_id if project_id else "global"


def _run(handler: AsyncCommand, args: argparse.Namespace) -> int:
    """Run an async handler against a fresh manager.

    Memory errors are reported as ``Error: ...`` with exit code 1.
    """

    async def runner() -> int:
        manager = _get_manager()
        try:
            return await handler(manager, args)
        finally:
            await manager.close()

    try:
        return asyncio.run(runner())
    except RecollectError as e:
        print(f"Error: {e}")
        return 1


async def _stats(manager: MemoryManager, args: argparse.Namespace) -> int:
    stats = await manager.get_stats(_scope(args))

    print("\nMemory statistics")
    print("-" * 40)
    print(f"Total facts: {stats.total_facts}")
    print(f"Average confidence: {stats.average_confidence:.2f}")
    print(f"Added in the last {manager.config.recent_days} days: {stats.recent_fact_count}")
    if stats.latest_update:
        print(f"Last update: {stats.latest_update}")

    if stats.category_counts:
        print("\nBy category:")
        for category, count in sorted(stats.category_counts.items()):
            print(f"  {category:<20} {count}")
    return 0


async def _list(manager: MemoryManager, args: argparse.Namespace) -> int:
    facts = await manager.list_facts(_scope(args), category=args.category, text=args.search)

    if not facts:
        print("No facts found.")
        return 0

    print(f"\n{'ID':<6} {'Category':<16} {'Conf':<6} {'Scope':<14} Content")
    print("-" * 80)

    for fact in facts:
        # Truncate long statements
        content = fact.content
        if len(content) > 50:
            content = content[:47] + "..."
        print(
            f"{fact.id:<6} {fact.category:<16} {fact.confidence:<6.1f} "
            f"{_format_scope(fact.project_id):<14} {content}"
        )

    print(f"\nTotal: {len(facts)} fact(s)")
    return 0


async def _search(manager: MemoryManager, args: argparse.Namespace) -> int:
    results = await manager.search_facts(args.query, _scope(args), limit=args.limit)

    if not results:
        print("No matching facts.")
        return 0

    for result in results:
        fact = result.fact
        print(f"[{fact.id}] {fact.content} ({fact.category}, similarity: {result.similarity:.2f})")
    return 0


async def _add(manager: MemoryManager, args: argparse.Namespace) -> int:
    fact = await manager.add_fact(
        args.content,
        category=args.category,
        confidence=args.confidence,
        project_id=args.project,
    )
    print(f"Added fact {fact.id}: {fact.content}")
    return 0


async def _edit(manager: MemoryManager, args: argparse.Namespace) -> int:
    if args.content is None and args.category is None and args.confidence is None:
        print("Error: Nothing to change. Use --content, --category or --confidence.")
        return 1

    fact = await manager.update_fact(
        args.id,
        content=args.content,
        category=args.category,
        confidence=args.confidence,
    )
    print(f"Updated fact {fact.id}: {fact.content} ({fact.category}, {fact.confidence:.1f})")
    return 0


async def _delete(manager: MemoryManager, args: argparse.Namespace) -> int:
    if await manager.delete_fact(args.id):
        print(f"Deleted fact {args.id}")
    else:
        print(f"Fact {args.id} does not exist.")
    return 0


async def _clear(manager: MemoryManager, args: argparse.Namespace) -> int:
    count = await manager.clear_all(Scope.everything())
    print(f"Deleted {count} fact(s)")
    return 0


async def _reembed(manager: MemoryManager, args: argparse.Namespace) -> int:
    count = await manager.reembed_all()
    print(f"Re-embedded {count} fact(s)")
    return 0


async def _context(manager: MemoryManager, args: argparse.Namespace) -> int:
    scope = Scope.for_project(args.project)
    context = await manager.build_context(args.query, scope, limit=args.limit)
    print(context if context else "No relevant facts.")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Show fact statistics."""
    return _run(_stats, args)


def cmd_list(args: argparse.Namespace) -> int:
    """List stored facts."""
    return _run(_list, args)


def cmd_search(args: argparse.Namespace) -> int:
    """Semantic search over stored facts."""
    return _run(_search, args)


def cmd_add(args: argparse.Namespace) -> int:
    """Add a fact manually."""
    return _run(_add, args)


def cmd_edit(args: argparse.Namespace) -> int:
    """Edit an existing fact."""
    return _run(_edit, args)


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a fact by id."""
    return _run(_delete, args)


def cmd_clear(args: argparse.Namespace) -> int:
    """Delete all facts."""
    if not args.yes:
        print("Error: This deletes every fact. Re-run with --yes to confirm.")
        return 1
    return _run(_clear, args)


def cmd_reembed(args: argparse.Namespace) -> int:
    """Recompute embeddings with the configured model."""
    return _run(_reembed, args)


def cmd_context(args: argparse.Namespace) -> int:
    """Preview the context block built for a query."""
    return _run(_context, args)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the memory CLI."""
    parser = argparse.ArgumentParser(
        prog="recollect",
        description="Manage long-term user memory",
    )

    subparsers = parser.add_subparsers(dest="command", help="Sub-command help")

    # stats command
    stats_parser = subparsers.add_parser("stats", help="Show fact statistics")
    stats_parser.add_argument("-p", "--project", help="Limit to global facts plus this project")

    # list command
    list_parser = subparsers.add_parser("list", help="List stored facts")
    list_parser.add_argument("-p", "--project", help="Limit to global facts plus this project")
    list_parser.add_argument("-c", "--category", help="Only facts in this category")
    list_parser.add_argument("-s", "--search", help="Only facts containing this text")

    # search command
    search_parser = subparsers.add_parser("search", help="Semantic fact search")
    search_parser.add_argument("query", help="Text to search for")
    search_parser.add_argument("-p", "--project", help="Limit to global facts plus this project")
    search_parser.add_argument("-n", "--limit", type=int, default=10, help="Maximum results")

    # add command
    add_parser = subparsers.add_parser("add", help="Add a fact")
    add_parser.add_argument("content", help="The fact, e.g. 'User prefers dark mode'")
    add_parser.add_argument("-c", "--category", default="general", help="Fact category")
    add_parser.add_argument(
        "--confidence",
        type=float,
        default=1.0,
        help="Confidence between 0.0 and 1.0",
    )
    add_parser.add_argument("-p", "--project", help="Project scope (global if omitted)")

    # edit command
    edit_parser = subparsers.add_parser("edit", help="Edit a fact")
    edit_parser.add_argument("id", type=int, help="Fact id")
    edit_parser.add_argument("--content", help="New statement")
    edit_parser.add_argument("-c", "--category", help="New category")
    edit_parser.add_argument("--confidence", type=float, help="New confidence")

    # delete command
    delete_parser = subparsers.add_parser("delete", help="Delete a fact")
    delete_parser.add_argument("id", type=int, help="Fact id")

    # clear command
    clear_parser = subparsers.add_parser("clear", help="Delete all facts")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm deletion")

    # reembed command
    subparsers.add_parser("reembed", help="Recompute all embeddings")

    # context command
    context_parser = subparsers.add_parser("context", help="Preview the memory context block")
    context_parser.add_argument("query", help="Message to build context for")
    context_parser.add_argument("-p", "--project", help="Project the message belongs to")
    context_parser.add_argument("-n", "--limit", type=int, help="Maximum facts")

    return parser


def run_cli(argv: list[str] | None = None) -> int:
    """Run the memory CLI with given arguments.

    Args:
        argv: Command-line arguments. Uses sys.argv[1:] if None.

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "stats": cmd_stats,
        "list": cmd_list,
        "search": cmd_search,
        "add": cmd_add,
        "edit": cmd_edit,
        "delete": cmd_delete,
        "clear": cmd_clear,
        "reembed": cmd_reembed,
        "context": cmd_context,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    return handler(args)


if __name__ == "__main__":
    sys.exit(run_cli())
