from __future__ import annotations

import argparse
from pathlib import Path

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from casefolio.cli.common import open_runtime, styled_status
from casefolio.cli.context import CLIContext


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("case", help="Create cases, submit documents and read results")
    case_subparsers = parser.add_subparsers(dest="case_command", required=True)

    create = case_subparsers.add_parser("create", help="Create an empty case")
    create.add_argument("name")
    create.set_defaults(handler=run_create)

    listing = case_subparsers.add_parser("list", help="List cases")
    listing.add_argument("--limit", type=int, default=50)
    listing.set_defaults(handler=run_list)

    add = case_subparsers.add_parser("add", help="Add PDF documents to a case and queue them for OCR")
    add.add_argument("case_id")
    add.add_argument("paths", nargs="+", type=Path)
    add.add_argument("--priority", type=int, default=None, help="Lower numbers are processed first")
    add.add_argument(
        "--no-copy",
        action="store_true",
        help="Reference the files in place instead of copying them into the uploads directory",
    )
    add.set_defaults(handler=run_add)

    status = case_subparsers.add_parser("status", help="Show case and per-document progress")
    status.add_argument("case_id")
    status.set_defaults(handler=run_status)

    text = case_subparsers.add_parser("text", help="Print or save the extracted text of a document")
    text.add_argument("document_id")
    text.add_argument("--output", type=Path, default=None)
    text.set_defaults(handler=run_text)

    retry = case_subparsers.add_parser("retry", help="Re-queue the failed documents of a case in error")
    retry.add_argument("case_id")
    retry.set_defaults(handler=run_retry)

    delete = case_subparsers.add_parser("delete", help="Delete a case, its documents and their queued jobs")
    delete.add_argument("case_id")
    delete.set_defaults(handler=run_delete)


def run_create(args: argparse.Namespace, ctx: CLIContext) -> int:
    case = open_runtime(ctx).case_service.create_case(args.name)
    ctx.console.print(f"[green]Case created[/green] {case.id} ({escape(case.name)})")
    return 0


def run_list(args: argparse.Namespace, ctx: CLIContext) -> int:
    cases = open_runtime(ctx).case_service.list_cases(limit=args.limit)

    table = Table(title=f"Cases ({len(cases)})")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Documents", justify="right")
    table.add_column("Created")
    for case in cases:
        table.add_row(
            case.id,
            escape(case.name),
            styled_status(case.status),
            f"{case.progress}%",
            f"{case.processed_documents}/{case.total_documents}",
            case.created_at,
        )
    ctx.console.print(table)
    return 0


def run_add(args: argparse.Namespace, ctx: CLIContext) -> int:
    documents = open_runtime(ctx).case_service.add_documents(
        args.case_id,
        args.paths,
        priority=args.priority,
        copy_to_uploads=not args.no_copy,
    )
    for document in documents:
        ctx.console.print(f"[green]Queued[/green] {document.id} {escape(document.display_name)}")
    ctx.console.print(f"{len(documents)} document(s) added to case {args.case_id}")
    return 0


def run_status(args: argparse.Namespace, ctx: CLIContext) -> int:
    view = open_runtime(ctx).case_service.get_case_status(args.case_id)
    case = view.case

    lines = [
        f"Case: {case.id}",
        f"Name: {escape(case.name)}",
        f"Status: {styled_status(case.status)}",
        f"Progress: {case.progress}%",
        f"Processed: {case.processed_documents}/{case.total_documents}",
        f"Updated: {case.updated_at}",
    ]
    if case.completed_at:
        lines.append(f"Completed: {case.completed_at}")
    if case.error_message:
        lines.append(f"Error: [red]{escape(case.error_message)}[/red]")
    ctx.console.print(Panel.fit("\n".join(lines), title="Case Status"))

    table = Table(title=f"Documents ({len(view.documents)})")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Pages", justify="right")
    table.add_column("Error", overflow="fold")
    for doc in view.documents:
        pages = doc.page_count if doc.page_count is not None else "?"
        table.add_row(
            doc.id,
            escape(doc.display_name),
            styled_status(doc.status),
            f"{doc.progress}%",
            f"{doc.current_page}/{pages}",
            escape(doc.error_message or ""),
        )
    ctx.console.print(table)
    return 0


def run_text(args: argparse.Namespace, ctx: CLIContext) -> int:
    text = open_runtime(ctx).case_service.get_document_text(args.document_id)
    if args.output is None:
        ctx.console.print(text, markup=False, highlight=False)
        return 0
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(text, encoding="utf-8")
    ctx.console.print(f"[green]Wrote[/green] {len(text)} characters to {args.output}")
    return 0


def run_retry(args: argparse.Namespace, ctx: CLIContext) -> int:
    result = open_runtime(ctx).case_service.retry_case(args.case_id)
    ctx.console.print(
        f"[green]Retry queued[/green] {len(result.retried_document_ids)} document(s) in case {result.case_id}"
    )
    return 0


def run_delete(args: argparse.Namespace, ctx: CLIContext) -> int:
    open_runtime(ctx).case_service.delete_case(args.case_id)
    ctx.console.print(f"[green]Deleted[/green] case {args.case_id}")
    return 0
