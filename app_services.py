"""
Service layer for external API calls and business logic.
Handles TheMealDB, Google sign-in, recipe search and grocery list storage.
"""

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Dict, Any, Optional, Callable, Tuple
from urllib.parse import urlencode
import requests
from sqlalchemy.orm import Session
from app_models import (
    Recipe, RecipeStub, meal_text, IngredientSuggestion, SearchResult, GroceryList,
    ValidationError, ExternalAPIError
)
from matching import find_similar_ingredients, normalize_ingredient
import grocery

logger = logging.getLogger(__name__)


class MealDBService:
    """Handle all TheMealDB API calls with caching."""

    BASE_URL = "https://www.themealdb.com/api/json/v1/1"
    REQUEST_TIMEOUT = 10
    MAX_CACHED_RECIPES = 500

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        """Initialize TheMealDB service."""
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout or self.REQUEST_TIMEOUT
        # Insertion-ordered, so the oldest entry is evicted first once full
        self._recipe_cache = {}
        self._cache_lock = threading.Lock()
        self._ingredient_catalog = None

    def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"TheMealDB request to {endpoint} failed: {str(e)}")
            raise ExternalAPIError(f"TheMealDB request failed: {str(e)}")
        except ValueError as e:
            logger.error(f"TheMealDB returned invalid JSON for {endpoint}: {str(e)}")
            raise ExternalAPIError("TheMealDB returned an invalid response")

    @staticmethod
    def _meals(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        # Unknown ingredients and ids come back as {"meals": null}
        meals = data.get("meals") if isinstance(data, dict) else None
        if not isinstance(meals, list):
            return []
        return [meal for meal in meals if isinstance(meal, dict)]

    def filter_by_ingredient(self, ingredient: str) -> List[RecipeStub]:
        """
        Find every recipe that uses an ingredient.

        Args:
            ingredient: Normalized ingredient name

        Returns:
            Recipe stubs (id, title, image); empty when the ingredient is unknown

        Raises:
            ExternalAPIError: If API call fails
        """
        data = self._get("filter.php", {"i": ingredient})
        stubs = [RecipeStub.from_mealdb(meal) for meal in self._meals(data) if meal.get("idMeal")]
        logger.info(f"TheMealDB found {len(stubs)} recipes for '{ingredient}'")
        return stubs

    def lookup_recipe(self, recipe_id: str) -> Optional[Dict[str, Any]]:
        """
        Get full details for a recipe.

        Args:
            recipe_id: TheMealDB meal id

        Returns:
            Raw meal object, or None if the id is unknown

        Raises:
            ExternalAPIError: If API call fails
        """
        recipe_id = str(recipe_id)
        with self._cache_lock:
            if recipe_id in self._recipe_cache:
                return self._recipe_cache[recipe_id]

        meals = self._meals(self._get("lookup.php", {"i": recipe_id}))
        if not meals:
            return None

        with self._cache_lock:
            if len(self._recipe_cache) >= self.MAX_CACHED_RECIPES:
                self._recipe_cache.pop(next(iter(self._recipe_cache)))
            self._recipe_cache[recipe_id] = meals[0]
        return meals[0]

    def list_ingredients(self) -> List[str]:
        """
        Get every ingredient name TheMealDB knows, lower-cased.

        Raises:
            ExternalAPIError: If API call fails
        """
        if self._ingredient_catalog is not None:
            return self._ingredient_catalog

        meals = self._meals(self._get("list.php", {"i": "list"}))
        catalog = [
            meal_text(meal, "strIngredient").strip().lower()
            for meal in meals
            if meal_text(meal, "strIngredient")
        ]
        logger.info(f"Loaded {len(catalog)} ingredient names from TheMealDB")
        self._ingredient_catalog = catalog
        return catalog

    def random_recipe(self) -> Optional[Dict[str, Any]]:
        """Get one random recipe as a raw meal object (never cached)."""
        meals = self._meals(self._get("random.php"))
        return meals[0] if meals else None


class RecipeSearchService:
    """High-level recipe orchestration over a recipe source."""

    MAX_CANDIDATES = 12
    MAX_DETAILED = 9
    MAX_RANDOM = 12

    def __init__(self, recipe_source, max_workers: int = 5):
        """
        Initialize with dependencies.

        Args:
            recipe_source: Object providing filter_by_ingredient, lookup_recipe,
                list_ingredients and random_recipe (normally MealDBService)
            max_workers: Thread pool size for concurrent lookups
        """
        self.source = recipe_source
        self.max_workers = max(1, max_workers)

    def _map(self, func: Callable, items: List[Any]) -> List[Any]:
        # executor.map yields in input order whatever order the calls finish in
        if not items:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(items))) as executor:
            return list(executor.map(func, items))

    def _lookup_ingredient(self, ingredient: str) -> List[RecipeStub]:
        try:
            return self.source.filter_by_ingredient(ingredient)
        except ExternalAPIError as e:
            logger.warning(f"Treating '{ingredient}' as unknown after lookup failure: {e.message}")
            return []

    def _load_catalog(self) -> List[str]:
        try:
            return self.source.list_ingredients()
        except ExternalAPIError as e:
            logger.warning(f"Ingredient catalog unavailable, skipping suggestions: {e.message}")
            return []

    def _fetch_detail(self, stub: RecipeStub, matched: List[str]) -> Optional[Recipe]:
        try:
            meal = self.source.lookup_recipe(stub.id)
        except ExternalAPIError as e:
            logger.warning(f"Dropping recipe {stub.id}: {e.message}")
            return None

        if not meal:
            logger.warning(f"Dropping recipe {stub.id}: no details returned")
            return None

        try:
            return Recipe.from_mealdb(meal, matched)
        except ValidationError as e:
            logger.warning(f"Dropping recipe {stub.id}: {e.message}")
            return None

    def _select_candidates(
        self,
        valid: List[str],
        stubs_by_ingredient: Dict[str, List[RecipeStub]],
        ids_by_ingredient: Dict[str, set]
    ) -> Tuple[List[RecipeStub], bool]:
        """
        Pick the recipes worth fetching in full.

        Args:
            valid: Ingredients that returned at least one recipe, in search order
            stubs_by_ingredient: Lookup results per valid ingredient
            ids_by_ingredient: Recipe ids per valid ingredient

        Returns:
            Tuple of (candidate stubs, whether the coverage fallback was used)
        """
        first = stubs_by_ingredient[valid[0]]
        if len(valid) == 1:
            return first, False

        common = [
            stub for stub in first
            if all(stub.id in ids_by_ingredient[ingredient] for ingredient in valid[1:])
        ]
        if common:
            return common, False

        # No recipe uses everything: rank the union by how many ingredients each covers
        union = {}
        for ingredient in valid:
            for stub in stubs_by_ingredient[ingredient]:
                union.setdefault(stub.id, stub)

        def coverage(stub: RecipeStub) -> int:
            return sum(1 for ingredient in valid if stub.id in ids_by_ingredient[ingredient])

        ranked = sorted(union.values(), key=lambda stub: -coverage(stub))
        logger.info(f"No recipe uses all of {valid}; ranking {len(ranked)} recipes by coverage")
        return ranked[:self.MAX_CANDIDATES], True

    def search_by_ingredients(self, ingredients: List[str]) -> SearchResult:
        """
        Complete workflow: look up → suggest → intersect or rank → enrich → sort.

        Args:
            ingredients: Normalized, de-duplicated ingredient names

        Returns:
            SearchResult with ranked recipes and suggestions for unknown ingredients
        """
        result = SearchResult(ingredients=list(ingredients))

        # Step 1: One lookup per ingredient, run concurrently
        lookups = self._map(self._lookup_ingredient, result.ingredients)

        stubs_by_ingredient = {}
        for ingredient, stubs in zip(result.ingredients, lookups):
            if stubs:
                stubs_by_ingredient[ingredient] = stubs
                result.valid_ingredients.append(ingredient)
            else:
                result.invalid_ingredients.append(ingredient)

        # Step 2: Suggest alternatives for the ingredients TheMealDB does not know
        if result.invalid_ingredients:
            catalog = self._load_catalog()
            if catalog:
                for ingredient in result.invalid_ingredients:
                    similar = find_similar_ingredients(ingredient, catalog)
                    if similar:
                        result.suggestions.append(IngredientSuggestion(ingredient, similar))

        if not result.valid_ingredients:
            logger.info(f"No valid ingredients among {result.ingredients}")
            return result

        # Step 3: Intersect, or fall back to coverage ranking
        ids_by_ingredient = {
            ingredient: {stub.id for stub in stubs}
            for ingredient, stubs in stubs_by_ingredient.items()
        }
        candidates, result.used_fallback = self._select_candidates(
            result.valid_ingredients, stubs_by_ingredient, ids_by_ingredient
        )

        # Step 4: Fetch details for the top candidates, dropping failures
        candidates = candidates[:self.MAX_DETAILED]
        matched = [
            [i for i in result.valid_ingredients if stub.id in ids_by_ingredient[i]]
            for stub in candidates
        ]
        detailed = self._map(lambda pair: self._fetch_detail(*pair), list(zip(candidates, matched)))
        recipes = [recipe for recipe in detailed if recipe is not None]

        # Step 5: Most matched ingredients first, stable on candidate order
        result.recipes = sorted(recipes, key=lambda r: -len(r.matched_ingredients))
        logger.info(
            f"Returning {len(result.recipes)} recipes for {result.valid_ingredients} "
            f"(fallback={result.used_fallback})"
        )
        return result

    def suggest_ingredients(self, term: str) -> IngredientSuggestion:
        """
        Suggest catalog names for a single term.

        Raises:
            ExternalAPIError: If the catalog cannot be loaded
        """
        term = normalize_ingredient(term)
        if not term:
            return IngredientSuggestion(term, [])
        return IngredientSuggestion(term, find_similar_ingredients(term, self.source.list_ingredients()))

    def get_recipe(self, recipe_id: str) -> Optional[Recipe]:
        """
        Get one recipe in full.

        Returns:
            Recipe, or None if the source does not know the id

        Raises:
            ExternalAPIError: If API call fails
        """
        meal = self.source.lookup_recipe(str(recipe_id))
        if not meal:
            return None
        return Recipe.from_mealdb(meal)

    def _fetch_random(self, _index: int) -> Optional[Recipe]:
        try:
            meal = self.source.random_recipe()
            return Recipe.from_mealdb(meal) if meal else None
        except (ExternalAPIError, ValidationError) as e:
            logger.warning(f"Skipping random recipe: {e.message}")
            return None

    def random_recipes(self, count: int = 6) -> List[Recipe]:
        """Fetch `count` random recipes (clamped to 1..12), skipping failures and repeats."""
        count = max(1, min(count, self.MAX_RANDOM))
        recipes = []
        seen = set()
        for recipe in self._map(self._fetch_random, list(range(count))):
            if recipe is not None and recipe.id not in seen:
                seen.add(recipe.id)
                recipes.append(recipe)
        logger.info(f"Loaded {len(recipes)} random recipes")
        return recipes


class GroceryListStore:
    """Get/replace storage of one grouped grocery list per user."""

    def __init__(self, db: Session):
        self.db = db

    def _row(self, user_id: int) -> Optional[GroceryList]:
        return self.db.query(GroceryList).filter(GroceryList.user_id == user_id).first()

    def get(self, user_id: int) -> List[grocery.GroceryListRecipe]:
        row = self._row(user_id)
        if not row or not row.items:
            return []
        try:
            return grocery.groups_from_dicts(json.loads(row.items))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Discarding unreadable grocery list for user {user_id}: {e}")
            return []

    def replace(self, user_id: int, groups: List[grocery.GroceryListRecipe]) -> List[grocery.GroceryListRecipe]:
        row = self._row(user_id)
        if row is None:
            row = GroceryList(user_id=user_id)
            self.db.add(row)
        row.items = json.dumps(grocery.groups_to_dicts(groups))
        self.db.commit()
        return groups

    def update(self, user_id: int, operation: Callable, *args, **kwargs) -> List[grocery.GroceryListRecipe]:
        """
        Apply an aggregator operation to the stored list and save the result.

        Args:
            user_id: Owner of the list
            operation: One of the grocery module functions
            *args, **kwargs: Passed to the operation after the current list

        Returns:
            The new grocery list
        """
        groups = operation(self.get(user_id), *args, **kwargs)
        return self.replace(user_id, groups)


class GoogleOAuthService:
    """Handle Google OAuth 2.0 sign-in (authorization code flow)."""

    AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
    SCOPES = [
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/userinfo.email",
    ]
    REQUEST_TIMEOUT = 10

    def __init__(self, client_id: Optional[str], client_secret: Optional[str], redirect_uri: str):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorization_url(self) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Trade an authorization code for the user's Google profile.

        Args:
            code: Code from the OAuth callback

        Returns:
            Dict with email, name and picture

        Raises:
            ExternalAPIError: If Google rejects the code or the profile has no email
        """
        try:
            token_response = requests.post(
                self.TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
                timeout=self.REQUEST_TIMEOUT,
            )
            token_response.raise_for_status()
            access_token = token_response.json().get("access_token")
            if not access_token:
                raise ExternalAPIError("Google did not return an access token")

            user_response = requests.get(
                self.USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.REQUEST_TIMEOUT,
            )
            user_response.raise_for_status()
            profile = user_response.json()

        except requests.exceptions.RequestException as e:
            logger.error(f"Google OAuth error: {str(e)}")
            raise ExternalAPIError(f"Google sign-in failed: {str(e)}")
        except ValueError as e:
            logger.error(f"Google OAuth returned invalid JSON: {str(e)}")
            raise ExternalAPIError("Google sign-in returned an invalid response")

        email = (profile.get("email") or "").strip().lower()
        if not email:
            raise ExternalAPIError("Google account has no email address")

        return {
            "email": email,
            "name": profile.get("name"),
            "picture": profile.get("picture"),
        }
