"""Shared fixtures for SignFlow tests."""

import base64
from io import BytesIO

import pytest
from PIL import Image
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from signflow.config import Settings
from signflow.core import SignFlow
from signflow.notifications import LogNotifier
from signflow.store import DocumentStore

OWNER_EMAIL = "olivia@example.com"
PAGE_WIDTH, PAGE_HEIGHT = letter


def make_pdf(pages: int = 2) -> bytes:
    """A small letter-size PDF with a line of text per page."""
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter, invariant=1)
    for n in range(1, pages + 1):
        c.setFont("Helvetica", 14)
        c.drawString(72, PAGE_HEIGHT - 72, f"Agreement page {n}")
        c.showPage()
    c.save()
    return buf.getvalue()


def make_png_data_url(width: int = 60, height: int = 20) -> str:
    """A solid navy PNG as a data URL."""
    image = Image.new("RGBA", (width, height), (0, 0, 128, 255))
    buf = BytesIO()
    image.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.fixture
def sample_pdf() -> bytes:
    """Two-page letter PDF."""
    return make_pdf(2)


@pytest.fixture
def png_data_url() -> str:
    return make_png_data_url()


@pytest.fixture
def tmp_store(tmp_path):
    """Create a temporary DocumentStore."""
    return DocumentStore(base_dir=tmp_path)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path / "signflow", frontend_url="https://sign.example.com")


@pytest.fixture
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture
def flow(settings, notifier) -> SignFlow:
    """A fully wired SignFlow over a temporary directory."""
    return SignFlow(settings, notifier=notifier)


@pytest.fixture
def owner(flow):
    return flow.identities.register(OWNER_EMAIL, "Olivia Owner")


@pytest.fixture
def stranger(flow):
    return flow.identities.register("mallory@example.com", "Mallory")


@pytest.fixture
def document(flow, owner, sample_pdf):
    """A two-page draft document owned by ``owner``."""
    return flow.upload(sample_pdf, "Service Agreement", owner, file_name="agreement.pdf")
