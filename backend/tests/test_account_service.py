"""
Account lifecycle over the auth API: register, login, verify, profile and password.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pymongo.errors import DuplicateKeyError

from conftest import TEST_PASSWORD, auth_headers, seed
from models import SubscriptionTier
from services.account_repository import MongoAccountRepository
from services.errors import ValidationError

REGISTRATION = {
    "email": "New.Student@University.edu",
    "password": TEST_PASSWORD,
    "full_name": "New Student",
}


@pytest.fixture(autouse=True)
def expose_verification_token(monkeypatch):
    monkeypatch.setenv("EXPOSE_VERIFICATION_TOKEN", "true")


def register(client, **overrides):
    return client.post("/api/auth/register", json={**REGISTRATION, **overrides})


class TestRegistration:

    def test_register_creates_free_unverified_account(self, client, repository):
        response = register(client)

        assert response.status_code == 200
        data = response.json()
        assert data["access_token"]
        assert data["verification_token"]
        account = data["account"]
        assert account["email"] == "new.student@university.edu"
        assert account["subscription_tier"] == "free"
        assert account["max_essays"] == 2
        assert account["essays_used"] == 0
        assert account["email_verified"] is False
        assert account["can_write_essay"] is True
        assert account["essays_remaining"] == 2
        assert account["subscription_state"] == "confirmed"

        stored = repository.accounts[account["account_id"]]
        assert stored["password_hash"] != TEST_PASSWORD
        assert "password_hash" not in account

    def test_duplicate_email_rejected(self, client):
        register(client)
        response = register(client, email="new.student@university.edu")

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.parametrize("password", ["alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"])
    def test_weak_password_rejected(self, client, password):
        response = register(client, password=password)
        assert response.status_code == 400
        assert "Password must" in response.json()["detail"]["message"]

    def test_malformed_email_is_validation_error(self, client, repository):
        response = register(client, email="not-an-email")
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "VALIDATION_ERROR"
        assert repository.accounts == {}

    def test_short_password_is_request_validation_error(self, client):
        response = register(client, password="Ab1")
        assert response.status_code == 422

    def test_token_hidden_unless_exposed(self, client, monkeypatch):
        monkeypatch.setenv("EXPOSE_VERIFICATION_TOKEN", "false")
        assert register(client).json()["verification_token"] is None


class TestLogin:

    def test_login_and_me(self, client):
        register(client)
        response = client.post(
            "/api/auth/login", json={"email": "NEW.STUDENT@university.edu", "password": TEST_PASSWORD}
        )
        assert response.status_code == 200

        token = response.json()["access_token"]
        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["full_name"] == "New Student"

    def test_wrong_password(self, client):
        register(client)
        response = client.post("/api/auth/login", json={"email": REGISTRATION["email"], "password": "Wrong12345"})
        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "AUTHENTICATION_FAILED"

    def test_unknown_email(self, client):
        response = client.post("/api/auth/login", json={"email": "ghost@university.edu", "password": TEST_PASSWORD})
        assert response.status_code == 401

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Token abc"},
        {"Authorization": "Bearer not-a-jwt"},
    ])
    def test_me_requires_valid_bearer_token(self, client, headers):
        assert client.get("/api/auth/me", headers=headers).status_code == 401


class TestVerification:

    def test_verify_email_twice_is_noop(self, client):
        token = register(client).json()["verification_token"]

        first = client.post("/api/auth/verify-email", json={"token": token})
        second = client.post("/api/auth/verify-email", json={"token": token})

        assert first.status_code == 200
        assert first.json()["email_verified"] is True
        assert second.status_code == 200
        assert second.json()["email_verified"] is True

    def test_unknown_token(self, client):
        response = client.post("/api/auth/verify-email", json={"token": "nope"})
        assert response.status_code == 400


class TestProfile:

    def test_update_name_and_email(self, client, repository, password_hash):
        account = seed(repository, password_hash=password_hash)
        response = client.put(
            "/api/auth/profile",
            json={"full_name": "Dr. Test Student", "email": "Dr.Student@University.edu"},
            headers=auth_headers(account),
        )

        assert response.status_code == 200
        assert response.json()["full_name"] == "Dr. Test Student"
        assert repository.accounts[account.account_id]["email"] == "dr.student@university.edu"

    def test_email_taken_by_another_account(self, client, repository):
        seed(repository, email="taken@university.edu")
        account = seed(repository, email="mine@university.edu")
        response = client.put(
            "/api/auth/profile", json={"email": "taken@university.edu"}, headers=auth_headers(account)
        )
        assert response.status_code == 400

    def test_email_claimed_between_check_and_write(self, client, repository):
        seed(repository, email="taken@university.edu")
        account = seed(repository, email="mine@university.edu")

        # the other account takes the address after the availability check
        with patch.object(repository, "get_by_email", AsyncMock(return_value=None)):
            response = client.put(
                "/api/auth/profile", json={"email": "taken@university.edu"}, headers=auth_headers(account)
            )

        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Email already registered"
        assert repository.accounts[account.account_id]["email"] == "mine@university.edu"

    def test_malformed_email_rejected_before_write(self, client, repository):
        account = seed(repository)
        response = client.put("/api/auth/profile", json={"email": "student@"}, headers=auth_headers(account))

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "VALIDATION_ERROR"
        assert repository.update_calls == 0

    def test_empty_update(self, client, repository):
        account = seed(repository)
        response = client.put("/api/auth/profile", json={}, headers=auth_headers(account))
        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Nothing to update"

    def test_profile_update_leaves_entitlement_fields_alone(self, client, repository):
        account = seed(repository, subscription_tier=SubscriptionTier.PRO, max_essays=None, essays_used=9)
        client.put("/api/auth/profile", json={"full_name": "Renamed"}, headers=auth_headers(account))

        doc = repository.accounts[account.account_id]
        assert doc["subscription_tier"] == SubscriptionTier.PRO
        assert doc["essays_used"] == 9


class TestChangePassword:

    def test_change_password_then_login(self, client, repository, password_hash):
        account = seed(repository, password_hash=password_hash)
        response = client.post(
            "/api/auth/change-password",
            json={"current_password": TEST_PASSWORD, "new_password": "NewPassword456"},
            headers=auth_headers(account),
        )
        assert response.status_code == 200

        old = client.post("/api/auth/login", json={"email": account.email, "password": TEST_PASSWORD})
        new = client.post("/api/auth/login", json={"email": account.email, "password": "NewPassword456"})
        assert old.status_code == 401
        assert new.status_code == 200

    def test_wrong_current_password(self, client, repository, password_hash):
        account = seed(repository, password_hash=password_hash)
        response = client.post(
            "/api/auth/change-password",
            json={"current_password": "Incorrect123", "new_password": "NewPassword456"},
            headers=auth_headers(account),
        )
        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Current password is incorrect"


@pytest.mark.asyncio
async def test_mongo_update_maps_duplicate_email_to_validation_error():
    db = MagicMock()
    db.accounts.find_one_and_update = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key error"))
    repository = MongoAccountRepository(db)

    with pytest.raises(ValidationError) as exc:
        await repository.update("ACC-1", 3, set_fields={"email": "taken@university.edu"})
    assert exc.value.message == "Email already registered"
