"""Wiring of the pipeline components from configuration."""

from dataclasses import dataclass, field
from pathlib import Path

from src.batch.coordinator import BatchCoordinator
from src.batch.intake import Batch
from src.extraction.client import ExtractionClient
from src.review.adapter import ReviewAdapter
from src.review.store import DocumentStore, HttpDocumentStore
from src.templates.registry import TemplateRegistry
from src.utils.config import AppConfig
from src.utils.logger import get_logger
from src.validation.rules_engine import RulesEngine

logger = get_logger(__name__)


@dataclass
class PipelineServices:
    """Shared components of one process.

    The registry is read-only; batches are keyed by id and each is
    driven by at most one coordinator run.
    """

    config: AppConfig
    registry: TemplateRegistry
    client: ExtractionClient
    coordinator: BatchCoordinator
    review: ReviewAdapter
    batches: dict[str, Batch] = field(default_factory=dict)

    def new_batch(self, template_key: str, organization_id: str) -> Batch:
        batch = Batch(
            template_key,
            organization_id,
            self.registry,
            max_file_size=self.config.batch.max_file_size_bytes,
        )
        self.batches[batch.id] = batch
        return batch

    def close(self) -> None:
        self.client.close()
        if isinstance(self.review.store, HttpDocumentStore):
            self.review.store.close()


def load_registry(config: AppConfig, client: ExtractionClient) -> TemplateRegistry:
    """Load the template catalogue from the service or the local file."""
    if config.templates.load_from_service:
        logger.info("Fetching templates from %s", config.service.base_url)
        return TemplateRegistry.from_entries(client.list_templates())
    return TemplateRegistry.from_yaml(Path(config.templates.templates_path))


def build_services(config: AppConfig, store: DocumentStore | None = None) -> PipelineServices:
    """Create the client, registry, coordinator and review adapter.

    Args:
        config: Application configuration.
        store: Document store; defaults to the HTTP store at the service URL.
    """
    client = ExtractionClient(config.service, config.batch.retry)
    registry = load_registry(config, client)
    rules_engine = RulesEngine()
    return PipelineServices(
        config=config,
        registry=registry,
        client=client,
        coordinator=BatchCoordinator.from_config(client, config.batch, rules_engine),
        review=ReviewAdapter(store or HttpDocumentStore(config.service), rules_engine),
    )
