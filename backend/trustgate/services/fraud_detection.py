import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from trustgate.config import FRAUD_RULES
from trustgate.errors import ExternalFetchError
from trustgate.schemas.common import Severity
from trustgate.schemas.verification import DocumentRecord, FraudIndicator, VerificationRecord
from trustgate.services.scoring import ensure_utc, sort_by_severity

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def detect_rapid_upload(documents: List[DocumentRecord], rules=None) -> Optional[FraudIndicator]:
    """First consecutive pair (by upload time) closer than the configured gap."""
    if rules is None:
        rules = FRAUD_RULES
    ordered = sorted(documents, key=lambda d: ensure_utc(d.uploaded_at))
    for previous, current in zip(ordered, ordered[1:]):
        gap = (ensure_utc(current.uploaded_at) - ensure_utc(previous.uploaded_at)).total_seconds()
        if gap < rules["rapid_upload_seconds"]:
            return FraudIndicator(
                type="rapid_document_upload",
                severity=Severity.medium,
                score=15,
                description="Documents uploaded in rapid succession",
                evidence={
                    "document_ids": [previous.id, current.id],
                    "seconds_between": gap,
                },
                detection_method="upload_timing",
            )
    return None


def detect_identical_file_names(documents: List[DocumentRecord]) -> Optional[FraudIndicator]:
    counts = Counter(d.original_file_name for d in documents if d.original_file_name)
    repeated = [name for name, count in counts.items() if count > 1]
    if not repeated:
        return None
    return FraudIndicator(
        type="identical_file_names",
        severity=Severity.medium,
        score=12,
        description="Multiple documents share the same file name",
        evidence={"file_names": repeated},
        detection_method="file_name_analysis",
    )


def detect_synthetic_identity(documents: List[DocumentRecord]) -> List[FraudIndicator]:
    names = []
    dobs = []
    for doc in documents:
        fields = doc.extracted_data
        if fields is None:
            continue
        if fields.first_name and fields.last_name:
            name = f"{fields.first_name} {fields.last_name}".strip().lower()
            if name not in names:
                names.append(name)
        if fields.date_of_birth and fields.date_of_birth not in dobs:
            dobs.append(fields.date_of_birth)

    indicators = []
    if len(names) > 1:
        indicators.append(FraudIndicator(
            type="name_inconsistency",
            severity=Severity.high,
            score=30,
            description="Different names extracted across documents",
            evidence={"names": names},
            detection_method="cross_document_comparison",
        ))
    if len(dobs) > 1:
        indicators.append(FraudIndicator(
            type="dob_inconsistency",
            severity=Severity.high,
            score=40,
            description="Different dates of birth extracted across documents",
            evidence={"dates_of_birth": dobs},
            detection_method="cross_document_comparison",
        ))
    return indicators


def detect_poor_quality(document: DocumentRecord, rules=None) -> Optional[FraudIndicator]:
    """Quality and OCR both below their floors; severity scales with the shortfall."""
    if rules is None:
        rules = FRAUD_RULES
    quality = document.quality_score
    ocr = document.ocr_confidence
    if quality is None or ocr is None:
        return None
    if quality >= rules["quality_floor"] or ocr >= rules["ocr_floor"]:
        return None

    shortfall = ((rules["quality_floor"] - quality) / rules["quality_floor"]
                 + (rules["ocr_floor"] - ocr) / rules["ocr_floor"]) / 2
    if shortfall >= 2 / 3:
        severity = Severity.high
    elif shortfall >= 1 / 3:
        severity = Severity.medium
    else:
        severity = Severity.low
    return FraudIndicator(
        type="poor_document_quality",
        severity=severity,
        score=round(10 + 20 * shortfall),
        description="Document quality and OCR confidence are both very low",
        evidence={
            "document_id": document.id,
            "quality_score": quality,
            "ocr_confidence": ocr,
        },
        detection_method="quality_analysis",
    )


class FraudDetector:
    def __init__(self, store, clock: Callable[[], datetime] = _utcnow, rules=None):
        self.store = store
        self.clock = clock
        self.rules = rules or FRAUD_RULES

    async def _duplicate_documents(self, verification: VerificationRecord) -> List[FraudIndicator]:
        indicators = []
        for doc in verification.documents:
            if not doc.file_hash:
                continue
            refs = await self.store.find_documents_by_hash(doc.file_hash, verification.id)
            if not refs:
                continue
            indicators.append(FraudIndicator(
                type="duplicate_document",
                severity=Severity.high,
                score=30,
                description="Document has been submitted in another verification",
                evidence={
                    "document_id": doc.id,
                    "duplicate_verification_ids": sorted({r.verification_id for r in refs}),
                },
                detection_method="hash_comparison",
            ))
        return indicators

    async def _velocity(self, verification: VerificationRecord) -> List[FraudIndicator]:
        since = self.clock() - timedelta(days=self.rules["velocity_window_days"])
        count = await self.store.count_recent_verifications(verification.user_id, since)
        if count < self.rules["velocity_min_count"]:
            return []
        return [FraudIndicator(
            type="velocity_abuse",
            severity=Severity.high,
            score=25,
            description="Unusually many verification attempts in a short period",
            evidence={"count": count, "window_days": self.rules["velocity_window_days"]},
            detection_method="velocity_analysis",
        )]

    async def detect_fraud_indicators(self, verification_id: str) -> List[FraudIndicator]:
        try:
            verification = await self.store.get_verification_by_id(verification_id)
        except ExternalFetchError as e:
            logger.warning(f"Fraud detection skipped for {verification_id}: {e}")
            return []
        if verification is None:
            return []

        indicators: List[FraudIndicator] = []
        try:
            indicators.extend(await self._duplicate_documents(verification))
        except ExternalFetchError as e:
            logger.warning(f"duplicate document check skipped for {verification_id}: {e}")

        documents = verification.documents
        rapid = detect_rapid_upload(documents, self.rules)
        if rapid:
            indicators.append(rapid)
        identical = detect_identical_file_names(documents)
        if identical:
            indicators.append(identical)

        try:
            indicators.extend(await self._velocity(verification))
        except ExternalFetchError as e:
            logger.warning(f"velocity check skipped for {verification_id}: {e}")

        indicators.extend(detect_synthetic_identity(documents))
        for doc in documents:
            quality = detect_poor_quality(doc, self.rules)
            if quality:
                indicators.append(quality)

        if indicators:
            logger.info(f"Fraud indicators for {verification_id}: {[i.type for i in indicators]}")
        return sort_by_severity(indicators)
