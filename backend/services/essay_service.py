"""Essay Service

Metered essay generation. Content is a fixed academic template with the
title substituted; the interesting part is that generation runs inside
MeteringService.run so the entitlement check, the write and the usage
increment happen under one per-account lease.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import re

from models import Account, AuditAction, Essay, EssayRequest
from services.entitlement_service import EntitlementDecision
from services.errors import ValidationError
from services.metering_service import MeteredResult, MeteringService
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# (exclusive upper word bound, min sources, max sources); last band is open-ended
SOURCE_REQUIREMENT_BANDS = [
    (1000, 15, 25),
    (2000, 25, 40),
    (3000, 35, 55),
    (4000, 45, 70),
    (5000, 60, 85),
    (6000, 75, 100),
    (None, 90, 120),
]

DOWNLOAD_FORMATS = ("markdown", "plain")

ESSAY_TEMPLATE = """# {title}

## Introduction

This comprehensive analysis examines {topic}, presenting a critical evaluation of current research and theoretical frameworks. The study draws upon extensive academic literature to provide a nuanced understanding of the topic, incorporating perspectives from leading scholars in the field.

## Literature Review

### Theoretical Framework

Recent developments in this field have been extensively documented by researchers (Smith et al., 2023; Johnson & Williams, 2022). The theoretical foundation established by these scholars provides crucial context for understanding the complexities inherent in this area of study.

### Current Research Trends

Contemporary research has identified several key patterns and emerging themes. According to Brown and Davis (2024), there has been a significant shift in methodological approaches, with researchers increasingly adopting interdisciplinary perspectives.

## Methodology

This analysis employs a systematic approach to examining the available literature, utilizing both quantitative and qualitative research methodologies. The research design incorporates multiple data sources to ensure comprehensive coverage of the topic.

## Analysis and Discussion

### Key Findings

The analysis reveals several critical insights that contribute to our understanding of the subject matter. These findings are consistent with recent studies conducted by leading research institutions (University Research Center, 2023).

### Implications for Practice

The practical implications of this research extend across multiple domains, offering valuable insights for practitioners and policymakers alike.

## Conclusion

This comprehensive examination provides valuable insights into {topic}, contributing to the ongoing scholarly discourse in this field. The findings suggest several directions for future research and practical applications.

## References

*Target length: {word_count} words. Citation style: {citation_style}. Required sources: {sources}.*

Brown, A., & Davis, M. (2024). Contemporary approaches to academic research. *Journal of Higher Education*, 45(2), 123-145.

Johnson, R., & Williams, S. (2022). Theoretical frameworks in modern scholarship. *Academic Review*, 38(4), 67-89.

Smith, J., Anderson, K., & Taylor, L. (2023). Methodological innovations in research design. *Research Methods Quarterly*, 15(1), 234-256.

University Research Center. (2023). *Annual report on academic trends*. Academic Press.
"""


def get_source_requirements(word_count: int) -> Dict[str, Any]:
    """Number of sources expected for an essay of ``word_count`` words."""
    for upper, low, high in SOURCE_REQUIREMENT_BANDS:
        if upper is None or word_count < upper:
            label = f"{low}-{high}+ sources" if upper is None else f"{low}-{high} sources"
            return {"min_sources": low, "max_sources": high, "label": label}
    raise AssertionError("unreachable")


def render_essay(request: EssayRequest, source_requirements: Dict[str, Any]) -> str:
    return ESSAY_TEMPLATE.format(
        title=request.title,
        topic=request.title.lower(),
        word_count=request.word_count,
        citation_style=request.citation_style.value,
        sources=source_requirements["label"],
    )


def to_plain_text(markdown: str) -> str:
    """Strip the markdown markup the essay template uses."""
    text = re.sub(r"^#{1,6}\s*", "", markdown, flags=re.MULTILINE)
    text = re.sub(r"\*{1,2}([^*]+)\*{1,2}", r"\1", text)
    return text


class EssayStore(ABC):

    @abstractmethod
    async def insert(self, essay: Essay) -> None:
        pass

    @abstractmethod
    async def get(self, account_id: str, essay_id: str) -> Optional[Essay]:
        pass

    @abstractmethod
    async def list_for_account(self, account_id: str, limit: int = 50) -> List[Essay]:
        pass


class MongoEssayStore(EssayStore):

    def __init__(self, db):
        self.db = db

    async def insert(self, essay: Essay) -> None:
        await self.db.essays.insert_one(essay.model_dump())

    async def get(self, account_id: str, essay_id: str) -> Optional[Essay]:
        doc = await self.db.essays.find_one({"essay_id": essay_id, "account_id": account_id}, {"_id": 0})
        return Essay(**doc) if doc else None

    async def list_for_account(self, account_id: str, limit: int = 50) -> List[Essay]:
        cursor = self.db.essays.find({"account_id": account_id}, {"_id": 0}).sort("created_at", -1)
        docs = await cursor.to_list(length=limit)
        return [Essay(**d) for d in docs]


class EssayService:

    def __init__(self, metering: MeteringService, store: EssayStore):
        self.metering = metering
        self.store = store

    async def generate(
        self, account_id: str, request: EssayRequest, now: Optional[datetime] = None
    ) -> MeteredResult:
        """Generate and persist an essay if the account is entitled to one.

        A denied request returns ``allowed=False`` with the decision and writes
        nothing except an ENTITLEMENT_DENIED audit entry.
        """
        async def work(account: Account, decision: EntitlementDecision) -> Essay:
            sources = get_source_requirements(request.word_count)
            essay = Essay(
                account_id=account.account_id,
                title=request.title,
                description=request.description,
                word_count=request.word_count,
                citation_style=request.citation_style,
                citation_frequency=request.citation_frequency,
                academic_level=request.academic_level,
                source_requirements=sources,
                content=render_essay(request, sources),
                entitlement_source=decision.source.value,
            )
            await self.store.insert(essay)
            return essay

        result = await self.metering.run(account_id, work, now=now)

        if not result.allowed:
            await create_audit_log(
                action=AuditAction.ENTITLEMENT_DENIED,
                actor_id=account_id,
                account_id=account_id,
                resource_type="essay",
                metadata={
                    "reason": result.decision.reason.value,
                    "tier": result.account.subscription_tier.value,
                    "word_count": request.word_count,
                },
            )
            return result

        essay = result.value
        await create_audit_log(
            action=AuditAction.ESSAY_GENERATED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="essay",
            resource_id=essay.essay_id,
            metadata={"word_count": essay.word_count, "source": essay.entitlement_source},
        )
        logger.info(f"Essay {essay.essay_id} generated for {account_id} via {essay.entitlement_source}")
        return result

    async def list_essays(self, account_id: str) -> List[Essay]:
        return await self.store.list_for_account(account_id)

    async def get_essay(self, account_id: str, essay_id: str) -> Optional[Essay]:
        return await self.store.get(account_id, essay_id)

    async def render_download(self, account_id: str, essay_id: str, fmt: str = "markdown") -> Optional[Dict[str, str]]:
        """Return {filename, media_type, body} for a download, or None if not found."""
        if fmt not in DOWNLOAD_FORMATS:
            raise ValidationError(f"Unsupported format: {fmt}")
        essay = await self.store.get(account_id, essay_id)
        if essay is None:
            return None
        if fmt == "markdown":
            return {"filename": f"{essay.essay_id}.md", "media_type": "text/markdown", "body": essay.content}
        return {"filename": f"{essay.essay_id}.txt", "media_type": "text/plain", "body": to_plain_text(essay.content)}
