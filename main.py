"""Flask app entrypoint for RecipeGen.

This file wires up the Flask app, JWT helpers, DB session handling,
and the endpoints used by the frontend: auth (email/password and Google),
ingredient search, saved recipes and the grouped grocery list.
"""

import os
import logging
import json
from datetime import datetime, timedelta
from urllib.parse import urlencode
from flask import Flask, request, jsonify, g, redirect
from flask_cors import CORS
from dotenv import load_dotenv
from sqlalchemy.exc import IntegrityError
import jwt
from app_models import (
    SearchRequest,
    Credentials,
    SessionContext,
    ValidationError,
    ExternalAPIError,
    User,
    SavedRecipe,
    SessionLocal,
    init_db,
)
from app_services import MealDBService, RecipeSearchService, GroceryListStore, GoogleOAuthService
from matching import autocomplete_ingredients
import grocery

load_dotenv()
init_db()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev_secret")

TOKEN_EXPIRY_DAYS = int(os.getenv("TOKEN_EXPIRY_DAYS", 7))
SITE = os.getenv("SITE", "http://localhost:5001").rstrip("/")

# CORS configuration - configure for production
CORS_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
cors_config = {
    "origins": os.getenv("CORS_ORIGINS", "*").split(","),
    "methods": CORS_METHODS,
    "allow_headers": ["Content-Type", "Authorization"],
    "max_age": 3600,
}
CORS(app, resources={r"/api/*": cors_config})

# Initialize services
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
    logger.warning("Missing Google OAuth credentials - Google sign-in disabled")

mealdb_service = MealDBService(
    os.getenv("MEALDB_BASE_URL", MealDBService.BASE_URL),
    float(os.getenv("MEALDB_TIMEOUT", MealDBService.REQUEST_TIMEOUT)),
)
recipe_search_service = RecipeSearchService(
    mealdb_service,
    max_workers=int(os.getenv("RECIPE_FETCH_WORKERS", 5)),
)
google_oauth_service = GoogleOAuthService(
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    f"{SITE}/api/auth/google/callback",
)

start_time = datetime.now()


# JWT helpers
def create_access_token(user_id, email, expires_delta=None):
    if expires_delta is None:
        expires_delta = timedelta(days=TOKEN_EXPIRY_DAYS)
    payload = {
        "user_id": user_id,
        "email": email,
        "iat": datetime.utcnow(),
        "exp": datetime.utcnow() + expires_delta,
    }
    return jwt.encode(payload, app.config["SECRET_KEY"], algorithm="HS256")


def decode_access_token(token):
    try:
        return jwt.decode(token, app.config["SECRET_KEY"], algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def get_db():
    if "db" not in g:
        g.db = SessionLocal()
    return g.db


@app.teardown_appcontext
def remove_db(exception=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def get_current_session():
    """Build the caller's SessionContext from the bearer token, or None."""
    if "session_context" in g:
        return g.session_context

    g.session_context = None
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header.split(" ", 1)[1]
    payload = decode_access_token(token)
    if not payload:
        return None
    user = get_db().query(User).filter(User.id == payload.get("user_id")).first()
    if user is None:
        return None
    g.session_context = SessionContext.from_user(user)
    return g.session_context


def unauthorized():
    return jsonify({"error": "Unauthorized", "message": "Please log in"}), 401


def validation_error(e):
    logger.warning(f"Validation error: {e.message}")
    return jsonify({
        "success": False,
        "error": e.message,
        "field": e.field
    }), 400


def json_body():
    """Request JSON as a dict; a missing body is empty, any other shape is rejected."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", "body")
    return data


def internal_error(context):
    logger.exception(f"Unexpected error in {context}")
    return jsonify({
        "success": False,
        "error": "Internal server error",
        "type": "internal_error"
    }), 500


def session_response(user, status):
    session = SessionContext.from_user(user)
    return (
        jsonify({
            "user": session.to_dict(),
            "accessToken": create_access_token(user.id, user.email),
        }),
        status,
    )


# --- AUTH ENDPOINTS ---
@app.route("/api/auth/signup", methods=["POST"])
def signup():
    db = get_db()

    try:
        credentials = Credentials.from_dict(json_body())
    except ValidationError as e:
        return validation_error(e)

    if db.query(User).filter(User.email == credentials.email).first():
        return jsonify({"error": "Email already exists"}), 409

    user = User(
        email=credentials.email,
        password_hash=User.hash_password(credentials.password),
        provider="password",
        last_login=datetime.utcnow(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"Registered user {user.id}")
    return session_response(user, 201)


@app.route("/api/auth/login", methods=["POST"])
def login():
    db = get_db()
    try:
        data = json_body()
    except ValidationError as e:
        return validation_error(e)
    email = str(data.get("email") or "").strip().lower()
    password = data.get("password")

    if not email or not password:
        return jsonify({"error": "Email and password required"}), 400

    user = db.query(User).filter(User.email == email).first()
    if not user or not user.verify_password(str(password)):
        return jsonify({"error": "Invalid email or password"}), 401

    user.last_login = datetime.utcnow()
    db.commit()

    return session_response(user, 200)


@app.route("/api/auth/me", methods=["GET"])
def get_current_user_info():
    """Get current authenticated user's info."""
    session = get_current_session()
    if not session:
        return unauthorized()

    return jsonify({"user": session.to_dict()}), 200


@app.route("/api/auth/logout", methods=["POST"])
def logout():
    """Logout endpoint (JWT is stateless, so the client drops its session)."""
    return jsonify({"message": "Logged out successfully"}), 200


@app.route("/api/auth/refresh", methods=["POST"])
def refresh_token():
    """Refresh access token using current JWT."""
    session = get_current_session()
    if not session:
        return unauthorized()

    return jsonify({
        "accessToken": create_access_token(session.user_id, session.email),
    }), 200


@app.route("/api/auth/google", methods=["GET"])
def google_login():
    """Send the browser to Google's consent page."""
    if not google_oauth_service.configured:
        return jsonify({"error": "Google sign-in is not configured"}), 503
    return redirect(google_oauth_service.authorization_url())


@app.route("/api/auth/google/callback", methods=["GET"])
def google_callback():
    """Finish Google sign-in and hand the session to the frontend."""
    code = request.args.get("code")
    if not code:
        return jsonify({"error": "No code"}), 400

    try:
        profile = google_oauth_service.exchange_code(code)
    except ExternalAPIError as e:
        return jsonify({"error": e.message, "type": "external_api_error"}), e.status_code

    db = get_db()
    user = db.query(User).filter(User.email == profile["email"]).first()
    if user is None:
        user = User(email=profile["email"], provider="google")
        db.add(user)
        logger.info(f"Created Google account for {profile['email']}")
    user.name = profile.get("name") or user.name
    user.picture = profile.get("picture") or user.picture
    user.last_login = datetime.utcnow()
    db.commit()
    db.refresh(user)

    params = urlencode({
        "token": create_access_token(user.id, user.email),
        "name": user.name or "",
        "picture": user.picture or "",
    })
    return redirect(f"{SITE}/?{params}")


# --- INGREDIENT ENDPOINTS ---
@app.route("/api/ingredients", methods=["GET"])
def list_ingredients():
    """List every ingredient name the recipe source knows."""
    try:
        catalog = recipe_search_service.source.list_ingredients()
    except ExternalAPIError as e:
        return jsonify({"error": e.message, "type": "external_api_error"}), e.status_code

    return jsonify({"ingredients": catalog, "count": len(catalog)}), 200


@app.route("/api/ingredients/suggest", methods=["GET"])
def suggest_ingredients():
    """Suggest catalog names for a term the user typed."""
    term = request.args.get("q", "")
    if not term.strip():
        return jsonify({"error": "Query parameter 'q' is required", "field": "q"}), 400

    try:
        suggestion = recipe_search_service.suggest_ingredients(term)
    except ExternalAPIError as e:
        return jsonify({"error": e.message, "type": "external_api_error"}), e.status_code

    return jsonify(suggestion.to_dict()), 200


@app.route("/api/ingredients/autocomplete", methods=["GET"])
def autocomplete():
    """Dropdown completions for the ingredient input box."""
    query = request.args.get("q", "")
    exclude = [name for name in request.args.get("exclude", "").split(",") if name.strip()]

    try:
        catalog = recipe_search_service.source.list_ingredients()
    except ExternalAPIError as e:
        return jsonify({"error": e.message, "type": "external_api_error"}), e.status_code

    return jsonify({"suggestions": autocomplete_ingredients(query, catalog, exclude)}), 200


# --- RECIPE ENDPOINTS ---
@app.route("/api/recipes/search", methods=["POST"])
def search_recipes():
    """
    Main endpoint: find recipes using the given ingredients.

    Request JSON:
    {
        "ingredients": ["chicken", "onion", "garlic"]
    }

    Response (success):
    {
        "success": true,
        "ingredients": [...],
        "valid_ingredients": [...],
        "invalid_ingredients": [...],
        "suggestions": [{"original": "...", "suggestions": [...]}],
        "used_fallback": false,
        "recipe_count": 9,
        "recipes": [...]
    }
    """
    try:
        try:
            data = json_body()
            if not data:
                logger.warning("Empty request body")
                return jsonify({
                    "success": False,
                    "error": "Request body must be JSON"
                }), 400
            search = SearchRequest.from_dict(data)
        except ValidationError as e:
            return validation_error(e)

        logger.info(f"Processing recipe search for {search.ingredients}")
        result = recipe_search_service.search_by_ingredients(search.ingredients)

        response = {"success": True}
        response.update(result.to_dict())
        return jsonify(response), 200

    except Exception:
        return internal_error("/api/recipes/search")


@app.route("/api/recipes/random", methods=["GET"])
def random_recipes():
    """Random recipes for the landing page."""
    try:
        count = int(request.args.get("count", 6))
    except ValueError:
        return jsonify({"success": False, "error": "count must be an integer", "field": "count"}), 400

    recipes = recipe_search_service.random_recipes(count)
    return jsonify({
        "recipe_count": len(recipes),
        "recipes": [r.to_dict() for r in recipes],
    }), 200


@app.route("/api/recipes/<recipe_id>", methods=["GET"])
def get_recipe(recipe_id):
    """Full details for one recipe."""
    try:
        recipe = recipe_search_service.get_recipe(recipe_id)
    except ExternalAPIError as e:
        logger.error(f"External API error: {e.message}")
        return jsonify({
            "success": False,
            "error": e.message,
            "type": "external_api_error"
        }), e.status_code

    if recipe is None:
        return jsonify({"success": False, "error": "Recipe not found"}), 404

    return jsonify(recipe.to_dict()), 200


# --- SAVED RECIPE ENDPOINTS ---
@app.route("/api/saved-recipes", methods=["GET"])
def list_saved_recipes():
    """List saved recipes for authenticated user."""
    session = get_current_session()
    if not session:
        return unauthorized()

    db = get_db()
    saved = db.query(SavedRecipe).filter(
        SavedRecipe.user_id == session.user_id
    ).order_by(SavedRecipe.created_at, SavedRecipe.id).all()

    return jsonify({
        "savedRecipes": [s.to_dict() for s in saved]
    }), 200


@app.route("/api/saved-recipes", methods=["POST"])
def save_recipe():
    """Save a recipe; saving the same recipe twice is a no-op."""
    session = get_current_session()
    if not session:
        return unauthorized()

    try:
        recipe = json_body().get("recipe")
    except ValidationError as e:
        return validation_error(e)
    if not isinstance(recipe, dict) or not recipe.get("id"):
        return jsonify({"error": "Missing data", "field": "recipe"}), 400

    db = get_db()
    recipe_id = str(recipe["id"])
    existing = db.query(SavedRecipe).filter(
        SavedRecipe.user_id == session.user_id,
        SavedRecipe.recipe_id == recipe_id
    ).first()
    if existing:
        return jsonify({"message": "Recipe already saved"}), 200

    db.add(SavedRecipe(user_id=session.user_id, recipe_id=recipe_id, data=json.dumps(recipe)))
    try:
        db.commit()
    except IntegrityError:
        # A concurrent request saved it first
        db.rollback()
        return jsonify({"message": "Recipe already saved"}), 200

    return jsonify({"message": "Recipe saved"}), 201


@app.route("/api/saved-recipes/<recipe_id>", methods=["DELETE"])
def delete_saved_recipe(recipe_id):
    """Remove a recipe from the saved list."""
    session = get_current_session()
    if not session:
        return unauthorized()

    db = get_db()
    saved = db.query(SavedRecipe).filter(
        SavedRecipe.user_id == session.user_id,
        SavedRecipe.recipe_id == str(recipe_id)
    ).first()
    if not saved:
        return jsonify({"error": "Saved recipe not found"}), 404

    db.delete(saved)
    db.commit()
    return jsonify({"message": "Recipe removed"}), 200


# --- GROCERY LIST ENDPOINTS ---
def grocery_response(groups, message=None):
    body = {
        "groceryList": grocery.groups_to_dicts(groups),
        "remaining": grocery.count_remaining(groups),
    }
    if message:
        body["message"] = message
    return jsonify(body), 200


def grocery_item_target(data):
    recipe_id = str(data.get("recipeId") or "").strip()
    item = str(data.get("item") or "").strip()
    if not recipe_id:
        raise ValidationError("recipeId is required", "recipeId")
    if not item:
        raise ValidationError("item is required", "item")
    return recipe_id, item


@app.route("/api/grocery-list", methods=["GET"])
def get_grocery_list():
    """Get the grouped grocery list for authenticated user."""
    session = get_current_session()
    if not session:
        return unauthorized()

    return grocery_response(GroceryListStore(get_db()).get(session.user_id))


@app.route("/api/grocery-list", methods=["POST"])
def add_to_grocery_list():
    """Add ingredients under a recipe, or under Miscellaneous Items."""
    session = get_current_session()
    if not session:
        return unauthorized()

    try:
        data = json_body()
    except ValidationError as e:
        return validation_error(e)
    ingredients = data.get("recipeIngredients")
    if not isinstance(ingredients, list) or any(not isinstance(i, str) for i in ingredients):
        return jsonify({"error": "Missing or invalid ingredients", "field": "recipeIngredients"}), 400

    groups = GroceryListStore(get_db()).update(
        session.user_id,
        grocery.add_ingredients,
        ingredients,
        recipe_name=data.get("recipeName"),
        recipe_id=data.get("recipeId"),
    )
    return grocery_response(groups, "Ingredients added to grocery list")


@app.route("/api/grocery-list", methods=["PUT"])
def replace_grocery_list():
    """Replace the whole grocery list."""
    session = get_current_session()
    if not session:
        return unauthorized()

    try:
        groups = grocery.groups_from_dicts(json_body().get("groceryList"))
    except ValidationError as e:
        return validation_error(e)

    groups = GroceryListStore(get_db()).replace(session.user_id, groups)
    return grocery_response(groups, "Grocery list updated successfully")


@app.route("/api/grocery-list/items", methods=["DELETE"])
def remove_grocery_item():
    """Remove one item; an emptied recipe group disappears."""
    session = get_current_session()
    if not session:
        return unauthorized()

    try:
        recipe_id, item = grocery_item_target(json_body())
    except ValidationError as e:
        return validation_error(e)

    groups = GroceryListStore(get_db()).update(session.user_id, grocery.remove_item, recipe_id, item)
    return grocery_response(groups)


@app.route("/api/grocery-list/items/toggle", methods=["POST"])
def toggle_grocery_item():
    """Check or uncheck one item."""
    session = get_current_session()
    if not session:
        return unauthorized()

    try:
        recipe_id, item = grocery_item_target(json_body())
    except ValidationError as e:
        return validation_error(e)

    groups = GroceryListStore(get_db()).update(session.user_id, grocery.toggle_item, recipe_id, item)
    return grocery_response(groups)


@app.route("/api/grocery-list/clear-completed", methods=["POST"])
def clear_completed_grocery_items():
    """Drop every checked item."""
    session = get_current_session()
    if not session:
        return unauthorized()

    groups = GroceryListStore(get_db()).update(session.user_id, grocery.clear_completed)
    return grocery_response(groups)


# --- UTILITY ENDPOINTS ---
@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for deployment monitoring."""
    uptime_seconds = (datetime.now() - start_time).total_seconds()
    return jsonify({
        "status": "ok",
        "uptime_seconds": int(uptime_seconds),
        "timestamp": datetime.now().isoformat()
    }), 200


@app.errorhandler(400)
def handle_bad_request(e):
    """Handle 400 errors."""
    logger.warning(f"Bad request: {str(e)}")
    return jsonify({
        "success": False,
        "error": "Bad request"
    }), 400


@app.errorhandler(404)
def handle_not_found(e):
    """Handle 404 errors."""
    return jsonify({
        "success": False,
        "error": "Endpoint not found"
    }), 404


@app.errorhandler(405)
def handle_method_not_allowed(e):
    return jsonify({
        "success": False,
        "error": "Method not allowed"
    }), 405


@app.errorhandler(500)
def handle_server_error(e):
    """Handle 500 errors."""
    logger.error(f"Server error: {str(e)}")
    return jsonify({
        "success": False,
        "error": "Internal server error"
    }), 500


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5001))
    debug = os.getenv("FLASK_ENV", "production") == "development"

    logger.info(f"Starting Flask app on port {port} (debug={debug})")
    logger.info(f"CORS allowed origins: {cors_config['origins']}")
    logger.info(f"TheMealDB: {mealdb_service.base_url}")
    logger.info(f"Google OAuth: {'configured' if google_oauth_service.configured else 'NOT SET'}")

    app.run(host="0.0.0.0", port=port, debug=debug)
