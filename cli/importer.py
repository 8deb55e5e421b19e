"""
Interactive bulk import: student CSV and document ZIP.

Nothing is written until the admin has seen the reconciliation summary
and confirmed it (or passed --yes). The server's bulk endpoint repeats the
duplicate check, so a record created by someone else in the meantime
rejects the batch instead of being duplicated.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from app.services.student_import import ReconciliationResult, ReferenceData, parse_student_csv, reconcile
from app.services.zip_documents import (
    FileUploadResult, OrganizedDocuments, UploadBatch, UploadPlan, UploadReport,
    organize_entries, plan_uploads, read_zip_entries, run_upload_batches,
)
from cli.api_client import ApiError, RegistryClient


@dataclass
class ImportOutcome:
    created: List[str] = field(default_factory=list)
    rejected_chunks: List[Dict[str, Any]] = field(default_factory=list)


# ========== Students (CSV) ==========

async def load_references(client: RegistryClient) -> ReferenceData:
    return ReferenceData.build(
        await client.list_departments(),
        await client.list_faculties(),
        await client.list_academic_years(),
    )


async def preview_students(client: RegistryClient, content: bytes) -> ReconciliationResult:
    """Parse and reconcile against a fresh copy of the server's identity list"""
    rows = parse_student_csv(content)
    existing = await client.student_identities(fresh=True)
    return reconcile(rows, existing, await load_references(client))


def render_student_preview(console: Console, result: ReconciliationResult, limit: int = 20) -> None:
    summary = result.summary()

    table = Table(title="Student import preview", show_header=False)
    table.add_column("", style="bold")
    table.add_column("", justify="right")
    table.add_row("Rows in file", str(summary["total"]))
    table.add_row("Duplicates skipped", f"[yellow]{summary['duplicates']}[/yellow]")
    table.add_row("  already registered", str(summary["existing_duplicates"]))
    table.add_row("  repeated in file", str(summary["batch_duplicates"]))
    table.add_row("Invalid rows", f"[red]{summary['invalid']}[/red]")
    table.add_row("Will import", f"[green]{summary['will_import']}[/green]")
    console.print(table)

    if result.duplicate_rows:
        dups = Table(title="Duplicates", title_style="yellow")
        dups.add_column("Row", justify="right")
        dups.add_column("Registration ID")
        dups.add_column("Certificate ID")
        dups.add_column("Reason")
        for dup in result.duplicate_rows[:limit]:
            reason = dup.reason.value.replace("_", " ")
            if dup.first_row is not None:
                reason += f" (row {dup.first_row})"
            dups.add_row(str(dup.row.row_number), dup.row.registration_id, dup.row.certificate_id or "-", reason)
        console.print(dups)

    if result.errors:
        errors = Table(title="Validation errors", title_style="red")
        errors.add_column("Row", justify="right")
        errors.add_column("Field")
        errors.add_column("Message")
        for error in result.errors[:limit]:
            errors.add_row(str(error.row_number), error.field or "-", error.message)
        console.print(errors)

    hidden = max(len(result.duplicate_rows), len(result.errors)) - limit
    if hidden > 0:
        console.print(f"[dim]... {hidden} more not shown[/dim]")


async def import_students(client: RegistryClient, result: ReconciliationResult,
                          chunk_size: int = 500) -> ImportOutcome:
    """
    Send the valid rows to the bulk endpoint in chunks.

    Each chunk is all-or-nothing on the server; a rejected chunk is
    reported and the remaining chunks are still sent.
    """
    outcome = ImportOutcome()
    payloads = [row.to_payload() for row in result.valid_rows]
    for start in range(0, len(payloads), chunk_size):
        chunk = payloads[start:start + chunk_size]
        try:
            response = await client.bulk_create_students(chunk)
            outcome.created.extend(response["registration_ids"])
        except ApiError as e:
            outcome.rejected_chunks.append({
                "rows": [payload["registration_id"] for payload in chunk],
                "error": e.message,
                "conflicting_ids": e.details.get("conflicting_ids", []),
            })
    return outcome


# ========== Documents (ZIP) ==========

async def plan_documents(client: RegistryClient, data: bytes) -> Tuple[OrganizedDocuments, UploadPlan]:
    entries = read_zip_entries(data)
    organized = organize_entries(entries)
    identities = await client.student_identities(fresh=True)
    plan = plan_uploads(organized, [student["registration_id"] for student in identities])
    return organized, plan


def render_document_plan(console: Console, organized: OrganizedDocuments, plan: UploadPlan) -> None:
    table = Table(title="Document upload plan")
    table.add_column("Registration ID")
    table.add_column("Type")
    table.add_column("Files")
    for batch in plan.batches:
        table.add_row(batch.registration_id, batch.document_type.value,
                      ", ".join(entry.file_name for entry in batch.files))
    console.print(table)
    console.print(f"{plan.file_count} files in {len(plan.batches)} batches")

    if plan.unknown_students:
        console.print(f"[yellow]Unknown students (skipped):[/yellow] {', '.join(plan.unknown_students)}")
    for entry in organized.unrecognized:
        console.print(f"[yellow]Unrecognized:[/yellow] {entry.path} ({entry.reason})")


def batch_uploader(client: RegistryClient):
    async def upload(batch: UploadBatch) -> List[FileUploadResult]:
        response = await client.upload_documents(
            batch.registration_id,
            batch.document_type.value,
            [(entry.file_name, entry.data) for entry in batch.files],
        )
        results = [
            FileUploadResult(batch.registration_id, batch.document_type, doc["file_name"],
                             success=True, document_id=doc["id"])
            for doc in response["documents"]
        ]
        results.extend(
            FileUploadResult(batch.registration_id, batch.document_type, failure["file_name"],
                             success=False, error=failure["error"])
            for failure in response.get("failed", [])
        )
        return results
    return upload


async def upload_documents(client: RegistryClient, plan: UploadPlan, concurrency: int = 3) -> UploadReport:
    return await run_upload_batches(plan.batches, batch_uploader(client), concurrency=concurrency)


def render_upload_report(console: Console, report: UploadReport) -> None:
    console.print(f"[green]{report.uploaded} uploaded[/green], [red]{report.failed} failed[/red]")
    for failure in report.failures:
        console.print(
            f"  [red]✗[/red] {failure.registration_id}/{failure.document_type.value}/"
            f"{failure.file_name}: {failure.error}"
        )


# ========== Workflow ==========

def confirm(console: Console, question: str, assume_yes: bool = False) -> bool:
    if assume_yes:
        return True
    return Confirm.ask(question, console=console, default=False)


async def run_import(client: RegistryClient, console: Console, csv_content: Optional[bytes],
                     zip_content: Optional[bytes] = None, assume_yes: bool = False) -> int:
    """Preview, confirm, write. Returns a process exit code."""
    exit_code = 0

    if csv_content is not None:
        result = await preview_students(client, csv_content)
        render_student_preview(console, result)
        if not result.valid_rows:
            console.print("[yellow]No new students to import[/yellow]")
        elif confirm(console, f"Import {len(result.valid_rows)} students?", assume_yes):
            outcome = await import_students(client, result, client.config.bulk_chunk_size)
            console.print(f"[green]✓ Created {len(outcome.created)} students[/green]")
            for chunk in outcome.rejected_chunks:
                console.print(f"[red]✗ Rejected {len(chunk['rows'])} rows:[/red] {chunk['error']} "
                              f"{', '.join(chunk['conflicting_ids'])}")
                exit_code = 1
        else:
            console.print("Import cancelled, nothing was written")
            return 1

    if zip_content is not None:
        organized, plan = await plan_documents(client, zip_content)
        render_document_plan(console, organized, plan)
        if not plan.batches:
            console.print("[yellow]No documents to upload[/yellow]")
        elif confirm(console, f"Upload {plan.file_count} documents?", assume_yes):
            report = await upload_documents(client, plan, client.config.upload_concurrency)
            render_upload_report(console, report)
            if report.failed:
                exit_code = 1
        else:
            console.print("Upload cancelled, nothing was written")
            return 1

    return exit_code
