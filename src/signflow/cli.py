"""SignFlow CLI — field-based document signing from the command line.

Usage:
    signflow upload contract.pdf --title "NDA"
    signflow add-field <document-id> --type signature --page 1 --x 72 --y 640
    signflow fill <field-id> "Jane Doe"
    signflow request <document-id> --signer "Jane <jane@example.com>" --sequential
    signflow finalize <document-id>
    signflow serve [--port 8400]
"""

import base64
import functools
import logging
import mimetypes
import re
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .config import Settings
from .core import SignFlow
from .errors import SignFlowError
from .fields import FieldSpec
from .models import (
    DocumentStatus,
    FieldType,
    Identity,
    SignaturePosition,
    SignerStatus,
    SigningOrder,
    SigningRequestStatus,
)
from .workflow import SignerSpec

console = Console()

_SIGNER_RE = re.compile(r"^\s*(.*?)\s*<([^>]+)>\s*$")

_DOC_STATUS_COLOR = {
    DocumentStatus.DRAFT: "dim",
    DocumentStatus.PENDING: "yellow",
    DocumentStatus.PARTIALLY_SIGNED: "blue",
    DocumentStatus.COMPLETED: "green",
    DocumentStatus.ARCHIVED: "dim",
}

_REQUEST_STATUS_COLOR = {
    SigningRequestStatus.PENDING: "yellow",
    SigningRequestStatus.IN_PROGRESS: "blue",
    SigningRequestStatus.COMPLETED: "green",
    SigningRequestStatus.EXPIRED: "red",
    SigningRequestStatus.CANCELLED: "red",
}


def _reports_errors(func):
    """Print domain errors in red and exit 1 instead of a traceback."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SignFlowError as exc:
            console.print(f"[red]{exc.message}[/]")
            sys.exit(1)

    return wrapper


def _flow(ctx: click.Context) -> SignFlow:
    return ctx.obj["flow"]


def _caller(ctx: click.Context) -> Identity:
    return _flow(ctx).identities.register(ctx.obj["user"])


def _parse_signer(raw: str) -> SignerSpec:
    match = _SIGNER_RE.match(raw)
    if match:
        name, email = match.group(1), match.group(2)
    else:
        email = raw.strip()
        name = email.split("@", 1)[0]
    return SignerSpec(email=email, name=name or email.split("@", 1)[0])


def _image_data_url(path: Path) -> str:
    mime = mimetypes.guess_type(path.name)[0] or "image/png"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    default=None,
    help="SignFlow data directory (default: ~/.signflow)",
)
@click.option(
    "--user",
    envvar="SIGNFLOW_USER",
    default="owner@localhost.localdomain",
    show_default=True,
    help="Email of the acting user",
)
@click.option("--verbose", "-v", is_flag=True, help="Log service activity")
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[str], user: str, verbose: bool) -> None:
    """SignFlow — field-based multi-party document signing."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )
    ctx.ensure_object(dict)
    settings = Settings.from_env(data_dir=Path(data_dir) if data_dir else None)
    ctx.obj["flow"] = SignFlow(settings)
    ctx.obj["user"] = user


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@main.command()
@click.argument("pdf", type=click.Path(exists=True, dir_okay=False))
@click.option("--title", default=None, help="Document title (default: file name)")
@click.pass_context
@_reports_errors
def upload(ctx: click.Context, pdf: str, title: Optional[str]) -> None:
    """Upload a PDF to sign."""
    pdf_path = Path(pdf)
    doc = _flow(ctx).upload(
        pdf_path.read_bytes(), title or pdf_path.stem, _caller(ctx), file_name=pdf_path.name
    )
    console.print(
        Panel(
            f"[bold green]Document uploaded[/]\n\n"
            f"  Title:  {doc.title}\n"
            f"  ID:     {doc.document_id}\n"
            f"  Pages:  {doc.page_count}\n"
            f"  Hash:   {doc.pdf_hash[:16]}...",
            title="SignFlow",
            border_style="green",
        )
    )


@main.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in DocumentStatus]),
    default=None,
    help="Filter by status",
)
@click.pass_context
@_reports_errors
def list_docs(ctx: click.Context, status: Optional[str]) -> None:
    """List your documents."""
    flow = _flow(ctx)
    docs = flow.list_documents(
        _caller(ctx), status=DocumentStatus(status) if status else None
    )
    if not docs:
        console.print("[dim]No documents found.[/]")
        return

    table = Table(title="SignFlow Documents")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Fields", justify="right")
    table.add_column("Created")

    for doc in docs:
        fields = flow.store.list_fields(doc.document_id)
        filled = sum(1 for f in fields if f.is_filled)
        color = _DOC_STATUS_COLOR.get(doc.status, "white")
        table.add_row(
            doc.document_id,
            doc.title,
            f"[{color}]{doc.status.value}[/]",
            f"{filled}/{len(fields)}",
            doc.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Fields
# ---------------------------------------------------------------------------

@main.command()
@click.argument("document_id")
@click.pass_context
@_reports_errors
def fields(ctx: click.Context, document_id: str) -> None:
    """List the fields placed on a document."""
    items = _flow(ctx).fields.list_for_document(document_id, _caller(ctx))
    if not items:
        console.print("[dim]No fields on this document.[/]")
        return

    table = Table(title="Fields")
    table.add_column("ID", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Page", justify="right")
    table.add_column("Box")
    table.add_column("Assigned")
    table.add_column("Status", justify="center")

    for f in items:
        status = "[green]filled[/]" if f.is_filled else (
            "[yellow]required[/]" if f.required else "[dim]optional[/]"
        )
        table.add_row(
            f.field_id,
            f.type.value,
            str(f.page),
            f"{f.x:.0f},{f.y:.0f} {f.width:.0f}x{f.height:.0f}",
            f.assigned_to or "—",
            status,
        )
    console.print(table)


@main.command("add-field")
@click.argument("document_id")
@click.option(
    "--type",
    "field_type",
    type=click.Choice([t.value for t in FieldType]),
    default=FieldType.SIGNATURE.value,
    show_default=True,
)
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--x", type=float, required=True, help="Left edge, top-left origin")
@click.option("--y", type=float, required=True, help="Top edge, top-left origin")
@click.option("--width", type=float, default=None)
@click.option("--height", type=float, default=None)
@click.option("--label", default=None)
@click.option("--assign", default=None, help="Email of the party who fills it")
@click.option("--optional", is_flag=True, help="Not required for finalize")
@click.option("--scale", type=float, default=1.0, show_default=True, help="Zoom the coordinates were read at")
@click.pass_context
@_reports_errors
def add_field(
    ctx: click.Context,
    document_id: str,
    field_type: str,
    page: int,
    x: float,
    y: float,
    width: Optional[float],
    height: Optional[float],
    label: Optional[str],
    assign: Optional[str],
    optional: bool,
    scale: float,
) -> None:
    """Place a field on a document page."""
    spec = FieldSpec(
        page=page,
        x=x,
        y=y,
        width=width,
        height=height,
        type=FieldType(field_type),
        label=label,
        required=not optional,
        assigned_to=assign,
    )
    field = _flow(ctx).fields.create(document_id, spec, _caller(ctx), scale=scale)
    console.print(
        f"[green]Added {field.type.value} field[/] {field.field_id} "
        f"on page {field.page}"
    )


@main.command()
@click.argument("field_id")
@click.argument("value", required=False)
@click.option("--image", type=click.Path(exists=True, dir_okay=False), help="Signature image to embed")
@click.option("--kind", default=None, help="signature, initials, drawn, ... (default: field type)")
@click.pass_context
@_reports_errors
def fill(
    ctx: click.Context,
    field_id: str,
    value: Optional[str],
    image: Optional[str],
    kind: Optional[str],
) -> None:
    """Fill a field with text, 'checked', or an image."""
    if image:
        value = _image_data_url(Path(image))
    if not value:
        raise click.UsageError("Provide a VALUE or --image")
    field = _flow(ctx).fields.fill(field_id, value, _caller(ctx), kind=kind)
    console.print(f"[green]Filled[/] {field.type.value} field {field.field_id}")


# ---------------------------------------------------------------------------
# Signing requests
# ---------------------------------------------------------------------------

@main.command()
@click.argument("document_id")
@click.option(
    "--signer",
    "signers",
    multiple=True,
    required=True,
    help='Signer as "Name <email>" (repeat, in signing order)',
)
@click.option("--sequential", is_flag=True, help="Signers must sign in the given order")
@click.option("--message", default=None)
@click.option("--subject", default=None)
@click.option("--expires-in-days", type=int, default=None)
@click.pass_context
@_reports_errors
def request(
    ctx: click.Context,
    document_id: str,
    signers: tuple[str, ...],
    sequential: bool,
    message: Optional[str],
    subject: Optional[str],
    expires_in_days: Optional[int],
) -> None:
    """Send a document out for signature."""
    flow = _flow(ctx)
    req = flow.workflow.create(
        document_id,
        [_parse_signer(s) for s in signers],
        _caller(ctx),
        signing_order=SigningOrder.SEQUENTIAL if sequential else SigningOrder.PARALLEL,
        message=message,
        subject=subject,
        expires_in_days=expires_in_days,
    )
    links = "\n".join(
        f"  {s.name}: {flow.notifications.signing_url(req.token, s.email)}"
        for s in req.signers
    )
    console.print(
        Panel(
            f"[bold green]Signing request created[/]\n\n"
            f"  ID:     {req.request_id}\n"
            f"  Order:  {req.signing_order.value}\n"
            f"  Token:  {req.token}\n\n"
            f"{links}",
            title="SignFlow",
            border_style="green",
        )
    )


@main.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in SigningRequestStatus]),
    default=None,
)
@click.option("--document", "document_id", default=None, help="Only this document")
@click.pass_context
@_reports_errors
def requests(ctx: click.Context, status: Optional[str], document_id: Optional[str]) -> None:
    """List your signing requests."""
    items = _flow(ctx).workflow.list(
        _caller(ctx),
        status=SigningRequestStatus(status) if status else None,
        document_id=document_id,
    )
    if not items:
        console.print("[dim]No signing requests found.[/]")
        return

    table = Table(title="Signing Requests")
    table.add_column("ID", style="dim")
    table.add_column("Document", style="dim", max_width=12)
    table.add_column("Order")
    table.add_column("Signers", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Expires")

    for r in items:
        signed = sum(1 for s in r.signers if s.status == SignerStatus.SIGNED)
        color = _REQUEST_STATUS_COLOR.get(r.status, "white")
        table.add_row(
            r.request_id,
            r.document_id[:12],
            r.signing_order.value,
            f"{signed}/{len(r.signers)}",
            f"[{color}]{r.status.value}[/]",
            r.expires_at.strftime("%Y-%m-%d") if r.expires_at else "—",
        )
    console.print(table)


@main.command()
@click.argument("request_id")
@click.pass_context
@_reports_errors
def cancel(ctx: click.Context, request_id: str) -> None:
    """Cancel a signing request."""
    req = _flow(ctx).workflow.cancel(request_id, _caller(ctx))
    console.print(f"[yellow]Cancelled[/] signing request {req.request_id}")


@main.command()
@click.argument("token")
@click.option("--email", required=True, help="Signer email")
@click.option("--image", type=click.Path(exists=True, dir_okay=False), help="Signature image")
@click.option("--text", default=None, help="Typed signature")
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--x", type=float, default=0.0)
@click.option("--y", type=float, default=0.0)
@click.option("--reject", "reject_reason", default=None, help="Refuse to sign, with a reason")
@click.pass_context
@_reports_errors
def sign(
    ctx: click.Context,
    token: str,
    email: str,
    image: Optional[str],
    text: Optional[str],
    page: int,
    x: float,
    y: float,
    reject_reason: Optional[str],
) -> None:
    """Sign (or reject) a signing request through its token."""
    data = _image_data_url(Path(image)) if image else text
    outcome = _flow(ctx).workflow.sign_by_token(
        token,
        email,
        signature_data=data,
        position=SignaturePosition(page=page, x=x, y=y),
        signature_type="uploaded" if image else "typed",
        reject_reason=reject_reason,
    )
    if outcome.rejected:
        console.print("[yellow]Rejection recorded.[/] The owner has been notified.")
    elif outcome.completed:
        console.print("[bold green]Signed. All signers are done.[/]")
    else:
        console.print(f"[green]Signed.[/] Request is {outcome.request.status.value}.")


# ---------------------------------------------------------------------------
# Finalization
# ---------------------------------------------------------------------------

@main.command()
@click.argument("document_id")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Also write the signed PDF here")
@click.pass_context
@_reports_errors
def finalize(ctx: click.Context, document_id: str, output: Optional[str]) -> None:
    """Bake every filled field into the signed PDF."""
    flow = _flow(ctx)
    result = flow.engine.finalize(document_id, _caller(ctx))
    if output:
        Path(output).write_bytes(flow.store.read_artifact(result.artifact_ref))
    console.print(
        Panel(
            f"[bold green]Document finalized[/]\n\n"
            f"  Title:    {result.document.title}\n"
            f"  Fields:   {result.fields_embedded} embedded\n"
            f"  Artifact: {result.artifact_ref}\n"
            f"  SHA-256:  {result.document.signed_hash[:16]}...",
            title="SignFlow",
            border_style="green",
        )
    )


@main.command()
@click.argument("document_id")
@click.option("--output", "-o", type=click.Path(dir_okay=False), required=True)
@click.pass_context
@_reports_errors
def preview(ctx: click.Context, document_id: str, output: str) -> None:
    """Render a preview PDF without finalizing."""
    data = _flow(ctx).engine.preview(document_id, _caller(ctx))
    Path(output).write_bytes(data)
    console.print(f"[green]Preview written to[/] {output}")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@main.command()
@click.argument("document_id")
@click.pass_context
@_reports_errors
def audit(ctx: click.Context, document_id: str) -> None:
    """Show the audit trail for a document."""
    entries = _flow(ctx).audit_trail(document_id, _caller(ctx))
    if not entries:
        console.print("[dim]No audit entries found.[/]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("User", style="dim")
    table.add_column("Details")

    for e in entries:
        details = ", ".join(f"{k}={v}" for k, v in e.details.items())
        table.add_row(
            e.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            e.action.value,
            (e.user_id or "—")[:8],
            details,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------

@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8400, help="Port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the SignFlow API server."""
    import os

    import uvicorn

    os.environ["SIGNFLOW_DATA_DIR"] = str(_flow(ctx).settings.data_dir)
    console.print(f"[bold]SignFlow API[/] listening on [cyan]http://{host}:{port}[/]")
    uvicorn.run(
        "signflow.api:create_app", factory=True, host=host, port=port, log_level="info"
    )


if __name__ == "__main__":
    main()
