"""Shared test fixtures for the scan pipeline test suite."""

import io
from pathlib import Path

import pytest
from PIL import Image

from src.batch.intake import Batch
from src.batch.state import FailureKind
from src.extraction.client import ExtractionFailure, ExtractionSuccess
from src.templates.registry import TemplateRegistry


def make_png_bytes(width: int = 40, height: int = 30) -> bytes:
    """Create a minimal PNG image as bytes."""
    img = Image.new("RGB", (width, height), color=(240, 240, 240))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_jpeg_bytes() -> bytes:
    img = Image.new("RGB", (40, 30), color=(10, 10, 10))
    buf = io.BytesIO()
    img.save(buf, format="JPEG")
    return buf.getvalue()


VALID_CUI = "12345674"
INVALID_CUI = "12345675"
VALID_CNP = "1960101123456"


class FakeExtractionClient:
    """Extraction client returning scripted outcomes in call order.

    Records every call and, when given a tracker-aware hook, the state of
    the batch at the moment each call was issued.
    """

    def __init__(self, outcomes: list, on_call=None) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []
        self.on_call = on_call

    def extract(self, payload, template_key, organization_id, filename=None):
        self.calls.append(
            {
                "filename": filename or payload.filename,
                "template_key": template_key,
                "organization_id": organization_id,
            }
        )
        if self.on_call is not None:
            self.on_call(payload)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        pass


def invoice_success(scan_id: str = "scan-1", **overrides) -> ExtractionSuccess:
    data = {
        "numar_document": "F-001",
        "data_document": "2024-03-15",
        "furnizor_nume": "Acme SRL",
        "furnizor_cui": VALID_CUI,
        "total_cu_tva": "1190.00",
        "moneda": "RON",
    }
    fields = {
        "extracted_data": data,
        "confidence_score": 87.5,
        "scan_id": scan_id,
    }
    fields.update(overrides)
    return ExtractionSuccess(**fields)


def service_failure(message: str = "Extraction service error (HTTP 500): boom") -> ExtractionFailure:
    return ExtractionFailure(FailureKind.SERVICE_ERROR, message)


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"


@pytest.fixture
def registry(config_dir: Path) -> TemplateRegistry:
    """The shipped template catalogue."""
    return TemplateRegistry.from_yaml(config_dir / "templates.yaml")


@pytest.fixture
def png_bytes() -> bytes:
    return make_png_bytes()


@pytest.fixture
def make_batch(registry: TemplateRegistry, png_bytes: bytes):
    """Factory building a pending batch of ``count`` PNG files."""

    def _make(count: int, template_key: str = "invoice_ro") -> Batch:
        batch = Batch(template_key, "org-1", registry)
        for i in range(count):
            batch.add_file(f"doc{i + 1}.png", png_bytes)
        return batch

    return _make
