from __future__ import annotations

import logging
import math
from typing import Sequence

from casefolio.application.services.notifier import TARGET_CASE, Notifier, safe_notify
from casefolio.core.time import now_utc_iso
from casefolio.domain.models.case import CaseAggregate, DocumentSnapshot
from casefolio.domain.models.status import DONE, ERROR, PROCESSING, TERMINAL_STATUSES, WAITING
from casefolio.infrastructure.db.repos.case_repo import CaseRepo

logger = logging.getLogger(__name__)

ERROR_MESSAGE_SEPARATOR = "; "
ALL_DOCUMENTS_FAILED_MESSAGE = "All documents failed to process"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def document_progress(current_page: int, total_pages: int | None) -> int:
    if not total_pages or total_pages <= 0:
        return 0
    bounded = max(0, min(int(current_page), int(total_pages)))
    return round_half_up(bounded / total_pages * 100)


def aggregate_case(documents: Sequence[DocumentSnapshot]) -> CaseAggregate:
    total = len(documents)
    completed = sum(1 for doc in documents if doc.status == DONE)
    errored = sum(1 for doc in documents if doc.status == ERROR)
    avg_progress = round_half_up(sum(doc.progress for doc in documents) / total) if total else 0
    error_message: str | None = None

    if total == 0:
        status = WAITING
    elif completed + errored == total and errored == total:
        status = ERROR
        messages = [doc.error_message for doc in documents if doc.status == ERROR and doc.error_message]
        error_message = ERROR_MESSAGE_SEPARATOR.join(messages) or ALL_DOCUMENTS_FAILED_MESSAGE
    elif completed + errored == total:
        status = DONE
    elif completed == total:
        status = DONE
    else:
        status = PROCESSING

    return CaseAggregate(
        status=status,
        progress=avg_progress,
        total_documents=total,
        processed_documents=completed + errored,
        completed_documents=completed,
        errored_documents=errored,
        error_message=error_message,
    )


class CaseStatusService:
    def __init__(self, case_repo: CaseRepo, notifier: Notifier | None = None) -> None:
        self.case_repo = case_repo
        self.notifier = notifier

    def recompute(self, case_id: str) -> CaseAggregate | None:
        result = self.case_repo.apply_aggregate(case_id, aggregate_case, now=now_utc_iso())
        if result is None:
            logger.warning("Case %s not found during status recompute", case_id)
            return None
        previous_status, aggregate = result
        logger.debug(
            "Case %s: %s -> %s (%s%%, %s/%s processed)",
            case_id,
            previous_status,
            aggregate.status,
            aggregate.progress,
            aggregate.processed_documents,
            aggregate.total_documents,
        )
        if aggregate.status in TERMINAL_STATUSES and previous_status != aggregate.status:
            logger.info("Case %s reached %s", case_id, aggregate.status)
            safe_notify(self.notifier, TARGET_CASE, case_id, aggregate.status)
        return aggregate
