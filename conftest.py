"""
Shared pytest fixtures.

The database is an in-memory SQLite and TheMealDB is replaced by an
in-memory fake, so no test touches the network.
"""

import os
import time

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("SECRET_KEY", "test_secret")

import pytest  # noqa: E402

from app_models import Base, engine, SessionLocal, User, ExternalAPIError  # noqa: E402
from app_models import RecipeStub  # noqa: E402
from app_services import RecipeSearchService  # noqa: E402
from mealdb_samples import make_meal  # noqa: E402


class FakeRecipeSource:
    """Stands in for MealDBService with a fixed set of recipes."""

    def __init__(self):
        self.meals = {
            "1": make_meal(1, "Chicken Curry", ["chicken", "curry powder", "rice"]),
            "2": make_meal(2, "Chicken Stew", ["chicken", "onion", "carrot"]),
            "3": make_meal(3, "Chicken Soup", ["chicken", "onion", "celery"]),
            "4": make_meal(4, "French Onion Soup", ["onion", "beef stock", "gruyere"]),
            "5": make_meal(5, "Garlic Bread", ["garlic", "butter", "bread"]),
            "6": make_meal(6, "Beef Wellington", ["beef", "mushrooms", "puff pastry"], category="Beef"),
        }
        self.by_ingredient = {
            "chicken": ["1", "2", "3"],
            "onion": ["2", "3", "4"],
            "garlic": ["5"],
            "beef": ["6"],
        }
        for i in range(100, 115):
            self.meals[str(i)] = make_meal(i, f"Rice Dish {i}", ["rice", "water"], category="Side")
        self.by_ingredient["rice"] = [str(i) for i in range(100, 115)]

        self.catalog = ["chicken", "onion", "garlic", "beef", "rice", "tomato", "tomatillo", "potato"]
        self.failing_ingredients = set()
        self.failing_recipes = set()
        self.missing_recipes = set()
        self.catalog_fails = False
        self.delays = {}
        self.random_queue = ["1", "4", "6"]
        self.lookup_calls = []
        self.filter_calls = []

    def filter_by_ingredient(self, ingredient):
        self.filter_calls.append(ingredient)
        time.sleep(self.delays.get(ingredient, 0))
        if ingredient in self.failing_ingredients:
            raise ExternalAPIError(f"lookup failed for {ingredient}")
        return [
            RecipeStub.from_mealdb(self.meals[meal_id])
            for meal_id in self.by_ingredient.get(ingredient, [])
        ]

    def lookup_recipe(self, recipe_id):
        self.lookup_calls.append(recipe_id)
        if recipe_id in self.failing_recipes:
            raise ExternalAPIError(f"lookup failed for {recipe_id}")
        if recipe_id in self.missing_recipes:
            return None
        return self.meals.get(str(recipe_id))

    def list_ingredients(self):
        if self.catalog_fails:
            raise ExternalAPIError("catalog unavailable")
        return list(self.catalog)

    def random_recipe(self):
        if not self.random_queue:
            raise ExternalAPIError("random failed")
        meal_id = self.random_queue.pop(0)
        return self.meals[meal_id]


@pytest.fixture(autouse=True)
def reset_db():
    """Fresh tables for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def fake_source():
    return FakeRecipeSource()


@pytest.fixture
def search_service(fake_source):
    return RecipeSearchService(fake_source, max_workers=4)


@pytest.fixture
def client(monkeypatch, search_service):
    """Create test client wired to the fake recipe source."""
    import main

    monkeypatch.setattr(main, "recipe_search_service", search_service)
    main.app.config["TESTING"] = True
    with main.app.test_client() as client:
        yield client


@pytest.fixture
def db_session():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def test_user(db_session):
    """Create test user."""
    user = User(
        email="test@example.com",
        password_hash=User.hash_password("password123"),
        name="Test Cook",
        provider="password",
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def auth_headers(test_user):
    """Bearer header for the test user."""
    from main import create_access_token
    token = create_access_token(test_user.id, test_user.email)
    return {"Authorization": f"Bearer {token}"}
