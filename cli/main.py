#!/usr/bin/env python3
"""
Student Records Registry CLI - Main Entry Point

Usage:
    registry students search [QUERY]          # Search students
    registry students show ID                 # Student detail with documents
    registry import students.csv              # Preview and import a CSV
    registry import students.csv --zip d.zip  # ...then upload documents
    registry verify GRW-BCS-2021              # Verify a certificate
    registry report                           # Dashboard summary
    registry report students                  # GPA and grade analytics
    registry cache stats                      # Server cache statistics
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import httpx
from rich.console import Console
from rich.table import Table

from app.core.exceptions import CSVImportError, ZipArchiveError
from cli.api_client import ApiError, RegistryClient
from cli.config import CLIConfig
from cli.importer import run_import


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="registry",
        description="Student Records Registry - admin command line client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  registry students search amina               Search by name or id
  registry students search --department-id 3   Filter by department
  registry students show 42                    Show one student
  registry import graduates.csv                Preview, confirm, import
  registry import graduates.csv --zip docs.zip --yes
  registry verify 202100123                    Verify by certificate number
  registry report documents                    Document counts and storage use
  registry cache stats                         Show server cache usage

ZIP layout:
  Photo/GRW-BCS-2021.jpg
  Transcript/GRW-BCS-2021.pdf
  Certificate/GRW-BCS-2021.pdf
  Supporting/GRW-BCS-2021.docx
        """
    )

    parser.add_argument("--server-url", type=str, help="Registry API URL (default: http://localhost:8000/api/v1)")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--actor", type=str, help="Name recorded in the audit log for writes")
    parser.add_argument("--json", dest="as_json", action="store_true", help="Print raw JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument("--version", action="version", version="%(prog)s 1.0.0")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # students
    students_parser = subparsers.add_parser("students", help="Browse student records")
    students_sub = students_parser.add_subparsers(dest="action")
    search_parser = students_sub.add_parser("search", help="Search students")
    search_parser.add_argument("query", nargs="?", help="Name, registration id or certificate id")
    search_parser.add_argument("--department-id", type=int)
    search_parser.add_argument("--faculty-id", type=int)
    search_parser.add_argument("--academic-year-id", type=int)
    search_parser.add_argument("--status", choices=["CLEARED", "UN_CLEARED"])
    search_parser.add_argument("--page", type=int, default=1)
    show_parser = students_sub.add_parser("show", help="Show one student")
    show_parser.add_argument("student_id", type=int)

    # import
    import_parser = subparsers.add_parser("import", help="Import students from CSV (and documents from ZIP)")
    import_parser.add_argument("csv", nargs="?", help="Student CSV file")
    import_parser.add_argument("--zip", dest="zip_path", help="Document ZIP to upload after the students")
    import_parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a certificate")
    verify_parser.add_argument("identifier", help="Registration id (GRW-...) or certificate number")

    # report
    report_parser = subparsers.add_parser("report", help="Dashboard reports")
    report_parser.add_argument("view", nargs="?", default="summary", choices=["summary", "students", "documents"])

    # cache
    cache_parser = subparsers.add_parser("cache", help="Server cache")
    cache_sub = cache_parser.add_subparsers(dest="action")
    cache_sub.add_parser("stats", help="Show cache statistics")
    clear_parser = cache_sub.add_parser("clear", help="Clear a namespace or every cache")
    clear_parser.add_argument("namespace", nargs="?")
    clear_parser.add_argument("--key")

    return parser


def build_config(args: argparse.Namespace) -> CLIConfig:
    config = CLIConfig.load_default()
    if args.config:
        config.load_from_file(args.config)
    if args.server_url:
        config.server_url = args.server_url
    if args.actor:
        config.actor = args.actor
    if args.verbose:
        config.verbose = True
    return config


# ========== Renderers ==========

def print_student_page(console: Console, page: dict) -> None:
    table = Table(title=f"Students (page {page['page']} of {max(page['total_pages'], 1)}, {page['total']} total)")
    table.add_column("ID", justify="right")
    table.add_column("Registration ID")
    table.add_column("Certificate ID")
    table.add_column("Name")
    table.add_column("Department")
    table.add_column("Status")
    table.add_column("Docs", justify="right")
    for student in page["students"]:
        table.add_row(
            str(student["id"]),
            student["registration_id"],
            student.get("certificate_id") or "-",
            student["full_name"],
            student.get("department_code") or "-",
            student["status"],
            str(student.get("document_count", 0)),
        )
    console.print(table)


def print_student(console: Console, student: dict) -> None:
    table = Table(title=student["full_name"], show_header=False)
    table.add_column("", style="bold")
    table.add_column("")
    for label, key in (
        ("Registration ID", "registration_id"),
        ("Certificate ID", "certificate_id"),
        ("Department", "department_name"),
        ("Faculty", "faculty_name"),
        ("Academic year", "academic_year"),
        ("GPA", "gpa"),
        ("Grade", "grade"),
        ("Graduation date", "graduation_date"),
        ("Status", "status"),
    ):
        value = student.get(key)
        table.add_row(label, "-" if value is None else str(value))
    console.print(table)

    documents = student.get("documents") or []
    if documents:
        docs = Table(title="Documents")
        docs.add_column("Type")
        docs.add_column("File")
        docs.add_column("Size", justify="right")
        for doc in documents:
            docs.add_row(doc["document_type"], doc["file_name"], str(doc["file_size"]))
        console.print(docs)
    else:
        console.print("[dim]No documents[/dim]")


def print_verification(console: Console, result: dict) -> None:
    if not result.get("found"):
        console.print(f"[red]✗ No student found for {result.get('identifier')}[/red]")
        return
    student = result["student"]
    console.print(f"[green]✓ Verified[/green] {student['full_name']} ({student['registration_id']})")
    console.print(f"  {student.get('department') or '-'}, {student.get('faculty') or '-'}")
    console.print(f"  Graduated {student.get('graduation_date') or '-'}, GPA {student.get('gpa') or '-'}, "
                  f"status {student['status']}")


def print_dashboard(console: Console, stats: dict) -> None:
    students = stats["students"]
    console.print(f"[bold]Students[/bold] {students['total']} "
                  f"({students['cleared']} cleared, {students['un_cleared']} un-cleared)")
    console.print(f"[bold]Documents[/bold] {stats['documents']['total']}")
    for item in stats.get("status_distribution", []):
        console.print(f"  {item['status']}: {item['count']} ({item['percentage']}%)")

    trend = Table(title="Registrations per month")
    trend.add_column("Month")
    trend.add_column("Students", justify="right")
    for item in stats.get("monthly_registrations", []):
        trend.add_row(item["month"], str(item["count"]))
    console.print(trend)

    recent = Table(title="Recent registrations")
    recent.add_column("Registration ID")
    recent.add_column("Name")
    recent.add_column("Department")
    recent.add_column("Status")
    for item in stats.get("recent_registrations", []):
        recent.add_row(item["registration_id"], item["full_name"], item.get("department_name") or "-",
                       item["status"])
    console.print(recent)


def print_student_analytics(console: Console, analytics: dict) -> None:
    table = Table(title="Students by department")
    table.add_column("Department")
    table.add_column("Students", justify="right")
    table.add_column("Average GPA", justify="right")
    for item in analytics["department_stats"]:
        gpa = item["average_gpa"]
        table.add_row(item["department_code"], str(item["count"]), "-" if gpa is None else f"{gpa:.2f}")
    console.print(table)

    bands = Table(title="GPA bands")
    bands.add_column("Band")
    bands.add_column("Students", justify="right")
    for band, count in analytics["gpa_bands"].items():
        bands.add_row(band, str(count))
    console.print(bands)


def print_document_insights(console: Console, insights: dict) -> None:
    table = Table(title=f"Documents ({insights['total_documents']} total)")
    table.add_column("Type")
    table.add_column("Count", justify="right")
    table.add_column("Avg size (KB)", justify="right")
    table.add_column("Total (MB)", justify="right")
    for item in insights["document_type_stats"]:
        table.add_row(item["type"], str(item["count"]), str(item["average_size_kb"]), str(item["total_size_mb"]))
    console.print(table)
    console.print(f"[dim]{insights['students_without_documents']} students have no documents[/dim]")


def print_cache_stats(console: Console, stats: dict) -> None:
    table = Table(title=f"Server cache ({stats['total_entries']} entries)")
    table.add_column("Namespace")
    table.add_column("Entries", justify="right")
    table.add_column("TTL (s)", justify="right")
    table.add_column("Hits", justify="right")
    table.add_column("Misses", justify="right")
    for name, ns in stats["namespaces"].items():
        table.add_row(name, str(ns["size"]), str(ns["ttl_seconds"]), str(ns["hits"]), str(ns["misses"]))
    console.print(table)
    refresh = stats.get("refresh") or {}
    console.print(
        f"[dim]Background refresh: {refresh.get('pending', 0)} pending, "
        f"{refresh.get('completed', 0)} completed, {refresh.get('failed', 0)} failed[/dim]"
    )


# ========== Commands ==========

async def run_command(args: argparse.Namespace, client: RegistryClient, console: Console) -> int:
    def emit(data, renderer) -> None:
        if args.as_json:
            console.print_json(json.dumps(data))
        else:
            renderer(console, data)

    if args.command == "students":
        if args.action == "search":
            page = await client.search_students(
                args.query,
                page=args.page,
                department_id=args.department_id,
                faculty_id=args.faculty_id,
                academic_year_id=args.academic_year_id,
                status=args.status,
            )
            emit(page, print_student_page)
            return 0
        if args.action == "show":
            emit(await client.get_student(args.student_id), print_student)
            return 0

    elif args.command == "import":
        if not args.csv and not args.zip_path:
            console.print("[red]Nothing to import: give a CSV file and/or --zip[/red]")
            return 2
        csv_content = Path(args.csv).read_bytes() if args.csv else None
        zip_content = Path(args.zip_path).read_bytes() if args.zip_path else None
        return await run_import(client, console, csv_content, zip_content, assume_yes=args.yes)

    elif args.command == "verify":
        result = await client.verify(args.identifier)
        emit(result, print_verification)
        return 0 if result.get("found") else 1

    elif args.command == "report":
        if args.view == "students":
            emit(await client.student_analytics(), print_student_analytics)
        elif args.view == "documents":
            emit(await client.document_insights(), print_document_insights)
        else:
            emit(await client.dashboard_stats(), print_dashboard)
        return 0

    elif args.command == "cache":
        if args.action == "stats":
            emit(await client.server_cache_stats(), print_cache_stats)
            return 0
        if args.action == "clear":
            result = await client.clear_server_cache(args.namespace, args.key)
            console.print(f"[green]✓ Removed {result['removed']} entries[/green]")
            return 0

    console.print("[yellow]Missing command; see --help[/yellow]")
    return 2


async def run(args: argparse.Namespace, config: CLIConfig, console: Console,
              client: Optional[RegistryClient] = None) -> int:
    client = client or RegistryClient(config)
    try:
        return await run_command(args, client, console)
    finally:
        await client.close()


def main(argv=None):
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)
    console = Console()
    config = build_config(args)

    if args.command is None:
        parser.print_help()
        sys.exit(2)

    try:
        sys.exit(asyncio.run(run(args, config, console)))
    except KeyboardInterrupt:
        console.print("\nCancelled")
        sys.exit(130)
    except (CSVImportError, ZipArchiveError) as e:
        console.print(f"[red]✗ {e.message}[/red]")
        sys.exit(1)
    except ApiError as e:
        console.print(f"[red]✗ {e.status_code} {e.code}: {e.message}[/red]")
        sys.exit(1)
    except httpx.HTTPError as e:
        console.print(f"[red]✗ Cannot reach the registry at {config.server_url}: {e}[/red]")
        sys.exit(1)
    except OSError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)
    except Exception as e:
        if config.verbose:
            console.print_exception()
        else:
            console.print(f"[red]✗ Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
