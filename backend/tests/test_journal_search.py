"""
Journal search: deterministic mock corpus, filtering, sorting, paging and saved articles.
"""
import pytest

from conftest import auth_headers, seed
from models import JournalSearchRequest
from services.journal_search_service import build_corpus, search_articles


def test_corpus_is_deterministic_per_query():
    first = build_corpus("Neural Networks")
    second = build_corpus("Neural Networks")

    assert len(first) == 200
    assert [a.citations for a in first] == [a.citations for a in second]
    assert first[0].doi == "10.1000/182"
    assert first[0].title == "Advanced Research in Neural Networks: A Comprehensive Analysis"
    assert [a.article_id for a in first] == [str(i) for i in range(1, 201)]


def test_generated_citations_in_range():
    citations = [a.citations for a in build_corpus("urban ecology")[5:]]
    assert min(citations) >= 10
    assert max(citations) <= 209


def test_search_pages_through_all_results():
    request = JournalSearchRequest(query="urban ecology", page_size=50)
    result = search_articles(request)

    assert result["total"] == 200
    assert result["total_pages"] == 4
    assert len(result["results"]) == 50

    last = search_articles(JournalSearchRequest(query="urban ecology", page=4, page_size=50))
    assert len(last["results"]) == 50
    beyond = search_articles(JournalSearchRequest(query="urban ecology", page=5, page_size=50))
    assert beyond["results"] == []


def test_field_scoped_relevance():
    result = search_articles(JournalSearchRequest(query="soil empirical", field="abstract"))
    assert result["total"] == 200
    assert result["results"][0]["title"].startswith("Empirical Evidence")


@pytest.mark.parametrize("sort_by,key", [("citations", "citations"), ("date", "year")])
def test_sorting(sort_by, key):
    result = search_articles(JournalSearchRequest(query="public health", sort_by=sort_by, page_size=50))
    values = [r[key] for r in result["results"]]
    assert values == sorted(values, reverse=True)


def test_relevance_keeps_curated_first_on_ties():
    result = search_articles(JournalSearchRequest(query="robotics", page_size=5))
    assert [r["article_id"] for r in result["results"]] == ["1", "2", "3", "4", "5"]


class TestSearchApi:

    def test_search_requires_auth(self, client):
        assert client.post("/api/journals/search", json={"query": "robotics"}).status_code == 401

    def test_search(self, client, repository):
        account = seed(repository)
        response = client.post(
            "/api/journals/search", json={"query": "robotics", "page_size": 10}, headers=auth_headers(account)
        )
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 200
        assert len(data["results"]) == 10

    def test_search_is_not_metered(self, client, repository):
        account = seed(repository, essays_used=2, max_essays=2)
        for _ in range(3):
            client.post("/api/journals/search", json={"query": "robotics"}, headers=auth_headers(account))
        assert repository.update_calls == 0

    @pytest.mark.parametrize("body", [
        {"query": "ab"},
        {"query": "robotics", "field": "authors"},
        {"query": "robotics", "sort_by": "popularity"},
        {"query": "robotics", "page": 0},
    ])
    def test_invalid_search(self, client, repository, body):
        account = seed(repository)
        assert client.post("/api/journals/search", json=body, headers=auth_headers(account)).status_code == 422

    def test_toggle_saved_article(self, client, repository, saved_store):
        account = seed(repository)
        headers = auth_headers(account)

        saved = client.post("/api/journals/saved/42", headers=headers).json()
        assert saved == {"article_id": "42", "saved": True, "message": "Article saved to your collection"}
        assert client.get("/api/journals/saved", headers=headers).json() == {"article_ids": ["42"], "total": 1}

        removed = client.post("/api/journals/saved/42", headers=headers).json()
        assert removed["saved"] is False
        assert client.get("/api/journals/saved", headers=headers).json()["total"] == 0

    def test_saved_articles_are_per_account(self, client, repository):
        mine = seed(repository)
        theirs = seed(repository, email="other@university.edu")
        client.post("/api/journals/saved/7", headers=auth_headers(mine))

        assert client.get("/api/journals/saved", headers=auth_headers(theirs)).json()["total"] == 0
