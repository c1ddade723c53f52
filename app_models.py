"""
Data models and validation for the recipe discovery service.
Handles persistence models, request validation and data transformation.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
import datetime
import json
import os
import re
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, UniqueConstraint, create_engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv
import bcrypt

load_dotenv()

Base = declarative_base()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///recipegen.db")


def _engine_options(url: str) -> Dict[str, Any]:
    # An in-memory SQLite database only survives on a single shared connection
    if url.startswith("sqlite") and ":memory:" in url:
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {}


engine = create_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine)

MAX_SEARCH_INGREDIENTS = 10
RECIPE_INGREDIENT_SLOTS = 20
DESCRIPTION_LENGTH = 120
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class User(Base):
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=True)  # empty for Google accounts
    name = Column(String(255))
    picture = Column(String(1024))
    provider = Column(String(32), default='password')
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    last_login = Column(DateTime, nullable=True)
    saved_recipes = relationship('SavedRecipe', back_populates='user', cascade='all, delete-orphan')
    grocery_list = relationship('GroceryList', uselist=False, back_populates='user', cascade='all, delete-orphan')

    def verify_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return bcrypt.checkpw(password.encode('utf-8'), self.password_hash.encode('utf-8'))

    @staticmethod
    def hash_password(password: str) -> str:
        return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "picture": self.picture,
            "provider": self.provider,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class SavedRecipe(Base):
    __tablename__ = 'saved_recipes'
    __table_args__ = (UniqueConstraint('user_id', 'recipe_id', name='uq_saved_recipe'),)
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    recipe_id = Column(String(64), nullable=False)
    data = Column(Text, nullable=False)  # JSON-encoded recipe
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    user = relationship('User', back_populates='saved_recipes')

    def to_dict(self):
        try:
            recipe = json.loads(self.data)
        except (TypeError, ValueError):
            recipe = {"id": self.recipe_id}
        recipe["savedAt"] = self.created_at.isoformat() if self.created_at else None
        return recipe


class GroceryList(Base):
    __tablename__ = 'grocery_lists'
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), unique=True, nullable=False)
    items = Column(Text, default='[]')  # JSON array of recipe groups
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)
    user = relationship('User', back_populates='grocery_list')


def init_db():
    Base.metadata.create_all(bind=engine)


class ValidationError(Exception):
    """Custom exception for validation errors."""
    def __init__(self, message: str, field: str = None):
        self.message = message
        self.field = field
        super().__init__(self.message)


class APIError(Exception):
    """Base exception for API errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ExternalAPIError(APIError):
    """Exception for external API (TheMealDB, Google) failures."""
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message, status_code)


def meal_text(meal: Dict[str, Any], key: str, default: str = "") -> str:
    """String field of a TheMealDB meal; anything that is not a non-blank string counts as missing."""
    value = meal.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return default


def normalize_ingredient_list(raw: List[Any]) -> List[str]:
    """Lower-case and trim each entry, dropping blanks and repeats but keeping order."""
    seen = set()
    ingredients = []
    for entry in raw:
        name = str(entry).strip().lower()
        if name and name not in seen:
            seen.add(name)
            ingredients.append(name)
    return ingredients


@dataclass
class SearchRequest:
    """Validated ingredient search from the frontend."""
    ingredients: List[str]

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SearchRequest":
        """
        Create SearchRequest from dictionary with full validation.

        Args:
            data: Dictionary from JSON request

        Returns:
            SearchRequest with normalized, de-duplicated ingredients

        Raises:
            ValidationError: If any field fails validation
        """
        raw = data.get("ingredients")
        if isinstance(raw, str):
            raw = raw.split(",")
        if not isinstance(raw, list):
            raise ValidationError("ingredients must be an array", "ingredients")

        if any(not isinstance(entry, str) for entry in raw):
            raise ValidationError("ingredients must contain only strings", "ingredients")

        ingredients = normalize_ingredient_list(raw)
        if not ingredients:
            raise ValidationError("Please provide at least one ingredient", "ingredients")

        if len(ingredients) > MAX_SEARCH_INGREDIENTS:
            raise ValidationError(
                f"ingredients must contain at most {MAX_SEARCH_INGREDIENTS} items",
                "ingredients"
            )

        return SearchRequest(ingredients=ingredients)


@dataclass
class Credentials:
    """Validated email/password pair."""
    email: str
    password: str

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Credentials":
        email = str(data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        if not email or not password:
            raise ValidationError("Email and password required", "email" if not email else "password")
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address", "email")
        if not isinstance(password, str):
            raise ValidationError("password must be a string", "password")
        return Credentials(email=email, password=password)


@dataclass
class SessionContext:
    """Identity of the caller, derived from the bearer token of one request."""
    user_id: int
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None

    @staticmethod
    def from_user(user: User) -> "SessionContext":
        return SessionContext(
            user_id=user.id,
            email=user.email,
            name=user.name,
            picture=user.picture,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "email": self.email,
            "name": self.name,
            "picture": self.picture,
        }


@dataclass
class RecipeStub:
    """Recipe summary returned by an ingredient lookup."""
    id: str
    title: str
    image: str

    @staticmethod
    def from_mealdb(meal: Dict[str, Any]) -> "RecipeStub":
        return RecipeStub(
            id=str(meal.get("idMeal")),
            title=meal_text(meal, "strMeal", "Unknown"),
            image=meal_text(meal, "strMealThumb"),
        )


@dataclass
class Recipe:
    """Complete recipe with the ingredients it matched in the current search."""
    id: str
    title: str
    image: str
    ingredients: List[str]
    instructions: str
    category: str = ""
    area: str = ""
    matched_ingredients: List[str] = field(default_factory=list)

    @property
    def description(self) -> str:
        return self.instructions[:DESCRIPTION_LENGTH] + "..."

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "id": self.id,
            "title": self.title,
            "image": self.image,
            "ingredients": self.ingredients,
            "description": self.description,
            "instructions": self.instructions,
            "category": self.category,
            "area": self.area,
            "matched_ingredients": self.matched_ingredients,
        }

    @staticmethod
    def from_mealdb(meal: Dict[str, Any], matched_ingredients: Optional[List[str]] = None) -> "Recipe":
        """
        Build a recipe from a TheMealDB lookup or random response.

        Args:
            meal: Raw meal object with strIngredient1..strIngredient20 slots
            matched_ingredients: Search ingredients this recipe contains

        Returns:
            Recipe object

        Raises:
            ValidationError: If the meal has no id
        """
        if not isinstance(meal, dict) or not meal.get("idMeal"):
            raise ValidationError("Recipe data is missing an id", "idMeal")

        ingredients = []
        for slot in range(1, RECIPE_INGREDIENT_SLOTS + 1):
            ingredient = meal_text(meal, f"strIngredient{slot}")
            if ingredient:
                ingredients.append(ingredient.strip().lower())

        return Recipe(
            id=str(meal["idMeal"]),
            title=meal_text(meal, "strMeal", "Unknown"),
            image=meal_text(meal, "strMealThumb"),
            ingredients=ingredients,
            instructions=meal_text(meal, "strInstructions"),
            category=meal_text(meal, "strCategory"),
            area=meal_text(meal, "strArea"),
            matched_ingredients=list(matched_ingredients or []),
        )


@dataclass
class IngredientSuggestion:
    """Catalog names offered in place of an ingredient the source does not know."""
    original: str
    suggestions: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"original": self.original, "suggestions": self.suggestions}


@dataclass
class SearchResult:
    """Outcome of a multi-ingredient search."""
    ingredients: List[str]
    valid_ingredients: List[str] = field(default_factory=list)
    invalid_ingredients: List[str] = field(default_factory=list)
    suggestions: List[IngredientSuggestion] = field(default_factory=list)
    recipes: List[Recipe] = field(default_factory=list)
    used_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "ingredients": self.ingredients,
            "valid_ingredients": self.valid_ingredients,
            "invalid_ingredients": self.invalid_ingredients,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "used_fallback": self.used_fallback,
            "recipe_count": len(self.recipes),
            "recipes": [r.to_dict() for r in self.recipes],
        }
