from tracker.pipeline.backfill import BackfillController
from tracker.pipeline.enrichment import EnrichmentCoordinator
from tracker.pipeline.lookup import LookupResult, LookupService

__all__ = ["BackfillController", "EnrichmentCoordinator", "LookupResult", "LookupService"]
