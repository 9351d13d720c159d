"""Journal Search Service

Mock academic search: five curated articles plus 195 generated ones, built
deterministically from the query so that paging through results is stable.
Not metered. Saved articles are per account.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List
import logging
import random

from models import JournalArticle, JournalSearchRequest

logger = logging.getLogger(__name__)

GENERATED_ARTICLE_COUNT = 195
DOI_PREFIX = "10.1000"

CURATED_ARTICLES = [
    {
        "title": "Advanced Research in {query}: A Comprehensive Analysis",
        "authors": ["Dr. Sarah Johnson", "Prof. Michael Chen", "Dr. Emily Rodriguez"],
        "journal": "Journal of Advanced Studies",
        "year": 2024,
        "abstract": "This study presents a comprehensive analysis of {topic}, examining current methodologies and proposing novel approaches. The research synthesizes findings from multiple disciplines to provide a holistic understanding of the subject matter.",
        "citations": 127,
        "keywords": ["methodology", "analysis", "research"],
    },
    {
        "title": "Theoretical Frameworks for Understanding {query}",
        "authors": ["Prof. David Williams", "Dr. Lisa Thompson"],
        "journal": "International Review of Academic Research",
        "year": 2023,
        "abstract": "This paper explores various theoretical frameworks that can be applied to understand {topic}. The authors present a systematic review of existing literature and propose an integrated model for future research.",
        "citations": 89,
        "keywords": ["theory", "framework", "model"],
    },
    {
        "title": "Empirical Evidence in {query} Studies: A Meta-Analysis",
        "authors": ["Dr. Robert Anderson", "Prof. Maria Garcia", "Dr. James Wilson"],
        "journal": "Quarterly Journal of Scientific Research",
        "year": 2023,
        "abstract": "Through a comprehensive meta-analysis of 150 studies, this research examines empirical evidence related to {topic}. The findings provide robust support for several key hypotheses in the field.",
        "citations": 234,
        "keywords": ["empirical", "meta-analysis", "evidence"],
    },
    {
        "title": "Innovation and Future Directions in {query}",
        "authors": ["Dr. Jennifer Lee", "Prof. Thomas Brown"],
        "journal": "Future Studies Quarterly",
        "year": 2024,
        "abstract": "This forward-looking study examines emerging trends and future directions in {topic}. The authors identify key areas for innovation and propose a roadmap for future research endeavors.",
        "citations": 45,
        "keywords": ["innovation", "future", "trends"],
    },
    {
        "title": "Methodological Approaches to {query} Research",
        "authors": ["Prof. Karen Smith", "Dr. Alex Kumar", "Dr. Sophie Martin"],
        "journal": "Research Methods in Social Sciences",
        "year": 2022,
        "abstract": "This comprehensive review examines various methodological approaches used in {topic} research. The paper provides practical guidance for researchers and highlights best practices in the field.",
        "citations": 156,
        "keywords": ["methodology", "research methods", "best practices"],
    },
]


def build_corpus(query: str) -> List[JournalArticle]:
    """All 200 articles for ``query``, curated ones first. Same query, same list."""
    query = query.strip()
    topic = query.lower()
    rng = random.Random(topic)
    articles = []

    for i, template in enumerate(CURATED_ARTICLES, start=1):
        articles.append(JournalArticle(
            article_id=str(i),
            title=template["title"].format(query=query),
            authors=list(template["authors"]),
            journal=template["journal"],
            year=template["year"],
            abstract=template["abstract"].format(topic=topic),
            doi=f"{DOI_PREFIX}/{181 + i}",
            citations=template["citations"],
            keywords=[topic, *template["keywords"]],
            url=f"https://doi.org/{DOI_PREFIX}/{181 + i}",
        ))

    for index in range(GENERATED_ARTICLE_COUNT):
        doi = f"{DOI_PREFIX}/{187 + index}"
        articles.append(JournalArticle(
            article_id=str(index + len(CURATED_ARTICLES) + 1),
            title=f"{query} in Contemporary Context: Study {index + 1}",
            authors=[f"Dr. Author {index + 1}", f"Prof. Researcher {index + 1}"],
            journal=f"Academic Journal {(index % 10) + 1}",
            year=2024 - (index % 5),
            abstract=(
                f"This study examines various aspects of {topic} within contemporary academic discourse. "
                "The research contributes to our understanding of the field through empirical analysis "
                "and theoretical exploration."
            ),
            doi=doi,
            citations=rng.randint(10, 209),
            keywords=[topic, "study", "research", "analysis"],
            url=f"https://doi.org/{doi}",
        ))
    return articles


def _field_text(article: JournalArticle, field: str) -> str:
    if field == "title":
        return article.title.lower()
    if field == "abstract":
        return article.abstract.lower()
    if field == "keywords":
        return " ".join(article.keywords).lower()
    return " ".join([article.title, article.abstract, *article.keywords]).lower()


def _relevance(article: JournalArticle, terms: List[str], field: str) -> int:
    text = _field_text(article, field)
    return sum(text.count(term) for term in terms)


def search_articles(request: JournalSearchRequest) -> Dict[str, Any]:
    terms = [t for t in request.query.lower().split() if t]
    matches = [a for a in build_corpus(request.query) if any(t in _field_text(a, request.field) for t in terms)]

    if request.sort_by == "date":
        matches.sort(key=lambda a: a.year, reverse=True)
    elif request.sort_by == "citations":
        matches.sort(key=lambda a: a.citations, reverse=True)
    else:
        # stable: ties keep corpus order, so curated articles lead
        matches.sort(key=lambda a: _relevance(a, terms, request.field), reverse=True)

    total = len(matches)
    start = (request.page - 1) * request.page_size
    page = matches[start:start + request.page_size]
    return {
        "query": request.query,
        "field": request.field,
        "sort_by": request.sort_by,
        "page": request.page,
        "page_size": request.page_size,
        "total": total,
        "total_pages": (total + request.page_size - 1) // request.page_size,
        "results": [a.model_dump() for a in page],
    }


class SavedArticleStore(ABC):

    @abstractmethod
    async def is_saved(self, account_id: str, article_id: str) -> bool:
        pass

    @abstractmethod
    async def save(self, account_id: str, article_id: str) -> None:
        pass

    @abstractmethod
    async def remove(self, account_id: str, article_id: str) -> None:
        pass

    @abstractmethod
    async def list_ids(self, account_id: str) -> List[str]:
        pass


class MongoSavedArticleStore(SavedArticleStore):

    def __init__(self, db):
        self.db = db

    async def is_saved(self, account_id: str, article_id: str) -> bool:
        doc = await self.db.saved_articles.find_one(
            {"account_id": account_id, "article_id": article_id}, {"_id": 0, "article_id": 1}
        )
        return doc is not None

    async def save(self, account_id: str, article_id: str) -> None:
        await self.db.saved_articles.update_one(
            {"account_id": account_id, "article_id": article_id},
            {"$setOnInsert": {"saved_at": datetime.now(timezone.utc)}},
            upsert=True,
        )

    async def remove(self, account_id: str, article_id: str) -> None:
        await self.db.saved_articles.delete_one({"account_id": account_id, "article_id": article_id})

    async def list_ids(self, account_id: str) -> List[str]:
        cursor = self.db.saved_articles.find({"account_id": account_id}, {"_id": 0, "article_id": 1}).sort("saved_at", 1)
        docs = await cursor.to_list(length=1000)
        return [d["article_id"] for d in docs]


async def toggle_saved(store: SavedArticleStore, account_id: str, article_id: str) -> bool:
    """Save the article, or unsave it if already saved. Returns the new state."""
    if await store.is_saved(account_id, article_id):
        await store.remove(account_id, article_id)
        return False
    await store.save(account_id, article_id)
    return True
