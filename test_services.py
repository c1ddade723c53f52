"""
Tests for the service layer: TheMealDB client, Google sign-in and grocery list storage.
No network access: requests is monkeypatched.
"""

from urllib.parse import urlparse, parse_qs

import pytest
import requests

import app_services
from app_models import ExternalAPIError, GroceryList
from app_services import MealDBService, GoogleOAuthService, GroceryListStore
from mealdb_samples import make_meal
import grocery


class FakeResponse:
    def __init__(self, payload=None, status_code=200, invalid_json=False):
        self.payload = payload
        self.status_code = status_code
        self.invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error")

    def json(self):
        if self.invalid_json:
            raise ValueError("Expecting value")
        return self.payload


class RecordingGet:
    """Replacement for requests.get that answers by endpoint name."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def __call__(self, url, params=None, timeout=None, headers=None):
        self.calls.append((url, params))
        response = self.responses[url.rsplit("/", 1)[-1]]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def mealdb():
    return MealDBService("https://mealdb.test/api/", timeout=2)


class TestMealDBService:
    """Test TheMealDB client."""

    def test_filter_by_ingredient(self, mealdb, monkeypatch):
        fake_get = RecordingGet({"filter.php": FakeResponse({"meals": [
            {"idMeal": "52795", "strMeal": "Chicken Handi", "strMealThumb": "handi.jpg"},
            {"strMeal": "No id"},
        ]})})
        monkeypatch.setattr(app_services.requests, "get", fake_get)

        stubs = mealdb.filter_by_ingredient("chicken")

        assert [s.id for s in stubs] == ["52795"]
        assert fake_get.calls == [("https://mealdb.test/api/filter.php", {"i": "chicken"})]

    def test_unknown_ingredient_is_empty(self, mealdb, monkeypatch):
        monkeypatch.setattr(app_services.requests, "get", RecordingGet({
            "filter.php": FakeResponse({"meals": None}),
        }))

        assert mealdb.filter_by_ingredient("chiken") == []

    def test_lookup_is_cached(self, mealdb, monkeypatch):
        fake_get = RecordingGet({"lookup.php": FakeResponse({"meals": [make_meal(1, "Curry", ["chicken"])]})})
        monkeypatch.setattr(app_services.requests, "get", fake_get)

        first = mealdb.lookup_recipe("1")
        second = mealdb.lookup_recipe(1)

        assert first["strMeal"] == "Curry"
        assert second is first
        assert len(fake_get.calls) == 1

    def test_non_object_entries_are_skipped(self, mealdb, monkeypatch):
        monkeypatch.setattr(app_services.requests, "get", RecordingGet({
            "filter.php": FakeResponse({"meals": ["52795", None, {"idMeal": "52796", "strMeal": 42}]}),
        }))

        stubs = mealdb.filter_by_ingredient("chicken")

        assert [(s.id, s.title) for s in stubs] == [("52796", "Unknown")]

    def test_lookup_cache_is_bounded(self, mealdb, monkeypatch):
        def fake_get(url, params=None, timeout=None):
            return FakeResponse({"meals": [make_meal(params["i"], "Stew", ["beef"])]})

        monkeypatch.setattr(app_services.requests, "get", fake_get)
        monkeypatch.setattr(mealdb, "MAX_CACHED_RECIPES", 3)

        for recipe_id in ["1", "2", "3", "4"]:
            mealdb.lookup_recipe(recipe_id)

        assert list(mealdb._recipe_cache) == ["2", "3", "4"]

    def test_lookup_unknown_id(self, mealdb, monkeypatch):
        monkeypatch.setattr(app_services.requests, "get", RecordingGet({
            "lookup.php": FakeResponse({"meals": None}),
        }))

        assert mealdb.lookup_recipe("999") is None

    def test_ingredient_catalog(self, mealdb, monkeypatch):
        fake_get = RecordingGet({"list.php": FakeResponse({"meals": [
            {"strIngredient": "Chicken"},
            {"strIngredient": " Olive Oil "},
            {"strIngredient": ""},
            {"strIngredient": None},
        ]})})
        monkeypatch.setattr(app_services.requests, "get", fake_get)

        assert mealdb.list_ingredients() == ["chicken", "olive oil"]
        assert mealdb.list_ingredients() == ["chicken", "olive oil"]
        assert len(fake_get.calls) == 1

    def test_random_recipe(self, mealdb, monkeypatch):
        monkeypatch.setattr(app_services.requests, "get", RecordingGet({
            "random.php": FakeResponse({"meals": [make_meal(9, "Pie", ["apple"])]}),
        }))

        assert mealdb.random_recipe()["idMeal"] == "9"

    @pytest.mark.parametrize("response", [
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.Timeout("slow"),
        FakeResponse(status_code=500),
        FakeResponse(invalid_json=True),
    ])
    def test_failures_raise_external_api_error(self, mealdb, monkeypatch, response):
        monkeypatch.setattr(app_services.requests, "get", RecordingGet({"filter.php": response}))

        with pytest.raises(ExternalAPIError) as excinfo:
            mealdb.filter_by_ingredient("chicken")
        assert excinfo.value.status_code == 502


class TestGoogleOAuthService:
    """Test the Google authorization code flow."""

    @pytest.fixture
    def google(self):
        return GoogleOAuthService("client-id", "client-secret", "http://localhost:5001/api/auth/google/callback")

    def test_configured(self, google):
        assert google.configured
        assert not GoogleOAuthService(None, None, "http://x").configured

    def test_authorization_url(self, google):
        url = urlparse(google.authorization_url())
        params = parse_qs(url.query)

        assert url.netloc == "accounts.google.com"
        assert params["client_id"] == ["client-id"]
        assert params["redirect_uri"] == ["http://localhost:5001/api/auth/google/callback"]
        assert params["response_type"] == ["code"]
        assert "email" in params["scope"][0]

    def test_exchange_code(self, google, monkeypatch):
        posted = {}

        def fake_post(url, data=None, timeout=None):
            posted.update(data)
            return FakeResponse({"access_token": "tok"})

        def fake_get(url, headers=None, timeout=None):
            assert headers["Authorization"] == "Bearer tok"
            return FakeResponse({"email": "Cook@Gmail.com", "name": "Cook", "picture": "me.png"})

        monkeypatch.setattr(app_services.requests, "post", fake_post)
        monkeypatch.setattr(app_services.requests, "get", fake_get)

        profile = google.exchange_code("abc")

        assert profile == {"email": "cook@gmail.com", "name": "Cook", "picture": "me.png"}
        assert posted["code"] == "abc"
        assert posted["grant_type"] == "authorization_code"

    def test_exchange_without_access_token(self, google, monkeypatch):
        monkeypatch.setattr(app_services.requests, "post", lambda *a, **k: FakeResponse({"error": "invalid_grant"}))

        with pytest.raises(ExternalAPIError):
            google.exchange_code("abc")

    def test_exchange_profile_without_email(self, google, monkeypatch):
        monkeypatch.setattr(app_services.requests, "post", lambda *a, **k: FakeResponse({"access_token": "tok"}))
        monkeypatch.setattr(app_services.requests, "get", lambda *a, **k: FakeResponse({"name": "Anon"}))

        with pytest.raises(ExternalAPIError):
            google.exchange_code("abc")

    def test_exchange_rejected(self, google, monkeypatch):
        monkeypatch.setattr(app_services.requests, "post", lambda *a, **k: FakeResponse(status_code=400))

        with pytest.raises(ExternalAPIError):
            google.exchange_code("abc")


class TestGroceryListStore:
    """Test per-user grocery list persistence."""

    def test_empty_for_new_user(self, db_session, test_user):
        assert GroceryListStore(db_session).get(test_user.id) == []

    def test_update_round_trips_through_database(self, db_session, test_user):
        store = GroceryListStore(db_session)
        store.update(test_user.id, grocery.add_ingredients, ["chicken"], recipe_name="Stew", recipe_id="2")
        store.update(test_user.id, grocery.toggle_item, "2", "chicken")

        groups = GroceryListStore(db_session).get(test_user.id)

        assert groups[0].name == "Stew"
        assert groups[0].ingredients[0].checked is True
        assert db_session.query(GroceryList).count() == 1

    def test_unreadable_list_is_discarded(self, db_session, test_user):
        db_session.add(GroceryList(user_id=test_user.id, items="{not json"))
        db_session.commit()

        assert GroceryListStore(db_session).get(test_user.id) == []
