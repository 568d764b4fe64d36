"""Analysis orchestrator: drain EXTRACTED records into actions.

For each EXTRACTED record (newest first, optionally capped):

1. Fetch the body transiently through the adapter
2. No body: mark ANALYZED anyway, so the record never gets stuck
3. Otherwise run the extractor, then store the actions and mark ANALYZED in
   one transaction

A failure on one record is logged and counted as skipped; the batch goes on.
Skipped records stay EXTRACTED and are picked up by the next run.

Bodies never leave this module: they are not stored and not logged.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from inbox_actions.core.logging import get_logger, short_id
from inbox_actions.db.store import DatabaseStore, EmailMetadata
from inbox_actions.extraction.engine import ActionExtractor, EmailContext

if TYPE_CHECKING:
    from inbox_actions.providers.base import EmailProvider

logger = get_logger(__name__)


@dataclass
class AnalysisResult:
    """Counters of one analysis batch."""

    processed_emails: int = 0
    extracted_actions: int = 0
    skipped_emails: int = 0


class AnalysisOrchestrator:
    """Runs the extractor over a provider's EXTRACTED records."""

    def __init__(
        self,
        store: DatabaseStore,
        extractor: ActionExtractor,
        max_emails: int | None = None,
    ):
        self.store = store
        self.extractor = extractor
        self.max_emails = max_emails

    async def analyze(self, provider: "EmailProvider") -> AnalysisResult:
        records = await provider.get_extracted_emails(limit=self.max_emails)
        result = AnalysisResult()

        for record in records:
            try:
                created = await self._analyze_record(provider, record)
            except Exception as e:
                result.skipped_emails += 1
                logger.warning(
                    "email_analysis_failed",
                    provider=provider.provider,
                    message_id=short_id(record.provider_message_id),
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                )
                continue

            result.processed_emails += 1
            result.extracted_actions += created

        logger.info(
            "analysis_pass_complete",
            provider=provider.provider,
            pending=len(records),
            processed=result.processed_emails,
            actions=result.extracted_actions,
            skipped=result.skipped_emails,
        )
        return result

    async def _analyze_record(self, provider: "EmailProvider", record: EmailMetadata) -> int:
        """Analyze one record; returns the number of actions created."""
        body = await provider.get_email_body_for_analysis(record.provider_message_id)
        if body is None:
            await provider.mark_email_as_analyzed(record.provider_message_id)
            logger.debug("email_without_body", message_id=short_id(record.provider_message_id))
            return 0

        drafts = self.extractor.extract(
            EmailContext(
                sender=record.sender,
                subject=record.subject,
                body=body,
                received_at=record.received_at,
            )
        )
        created = await self.store.record_analysis(record, drafts)
        logger.debug(
            "email_analyzed",
            message_id=short_id(record.provider_message_id),
            actions=created,
        )
        return created
