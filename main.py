"""Flask app entrypoint for HealthChef.

This file wires up the Flask app, JWT helpers, DB session handling,
and the auth, profile and recipe-generation endpoints used by the frontend.
Protected views receive an explicit RequestContext instead of reading
credentials from globals.
"""

import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from functools import wraps
from flask import Flask, request, jsonify, g
from flask_cors import CORS
import jwt
from config import config
from app_models import (
    ValidationError,
    ProviderError,
    User,
    Profile,
    ProfileUpdate,
    IngredientRequest,
    RequestContext,
    UserProfile,
    AllBlockedResult,
    PromptMode,
    SessionLocal,
    init_db,
    EMAIL_PATTERN,
    MIN_PASSWORD_LENGTH,
)
from app_services import GeminiService, RecipeService, APOLOGY_MESSAGE, FALLBACK_NOTICE

init_db()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.config["SECRET_KEY"] = config.SECRET_KEY

# CORS configuration
CORS_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
cors_config = {
    "origins": [origin.strip() for origin in config.CORS_ORIGINS.split(",") if origin.strip()],
    "methods": CORS_METHODS,
    "allow_headers": ["Content-Type", "Authorization"],
    "supports_credentials": True,
    "max_age": 3600,
}
CORS(app, resources={r"/api/*": cors_config})

if not config.GOOGLE_API_KEY:
    logger.warning("GOOGLE_API_KEY is not set - structured endpoints will return example content")

gemini_service = GeminiService(
    config.GOOGLE_API_KEY,
    model=config.GEMINI_MODEL,
    timeout_seconds=config.GENERATION_TIMEOUT_SECONDS,
)
recipe_service = RecipeService(gemini_service)

start_time = datetime.now()


# JWT helpers
def create_access_token(user_id, role, expires_delta=None):
    # Default expiration: JWT_EXPIRES_DAYS (if not provided)
    if expires_delta is None:
        expires_delta = timedelta(days=config.JWT_EXPIRES_DAYS)
    now = datetime.utcnow()
    payload = {
        "user_id": user_id,
        "role": role,
        "iat": now,
        "exp": now + expires_delta,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, app.config["SECRET_KEY"], algorithm="HS256")


def decode_access_token(token):
    try:
        return jwt.decode(token, app.config["SECRET_KEY"], algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.warning("Rejected expired access token")
        return None
    except jwt.InvalidTokenError:
        logger.warning("Rejected invalid access token")
        return None


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def get_db():
    if "db" not in g:
        g.db = SessionLocal()
    return g.db


@app.teardown_appcontext
def remove_db(exception=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def get_request_context():
    """Build the RequestContext for the bearer token on this request, or None."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)
    if not payload:
        return None
    db = get_db()
    user = db.query(User).filter(User.id == payload.get("user_id")).first()
    if not user or not user.is_active:
        return None
    profile = user.profile.to_user_profile() if user.profile else UserProfile()
    return RequestContext(
        user_id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        token=token,
        profile=profile,
    )


def login_required(view):
    """Reject unauthenticated requests; pass the RequestContext as the first argument."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        ctx = get_request_context()
        if ctx is None:
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        return view(ctx, *args, **kwargs)
    return wrapper


def get_json_body():
    """Request JSON as a dict; a body that is not a JSON object is a ValidationError."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def validation_error_response(e: ValidationError):
    logger.warning(f"Validation error: {e.message}")
    return jsonify({
        "success": False,
        "error": e.message,
        "field": e.field
    }), 400


def auth_response(user, token, message, status):
    return jsonify({
        "success": True,
        "message": message,
        "user": {"id": user.id, "name": user.name, "email": user.email},
        "accessToken": token,
        "refreshTokenSetCookie": False,
    }), status


# --- AUTH ENDPOINTS ---
@app.route("/api/auth/signup", methods=["POST"])
@app.route("/api/auth/register", methods=["POST"])
def register():
    db = get_db()
    try:
        data = get_json_body()
    except ValidationError as e:
        return validation_error_response(e)
    name = str(data.get("name") or "").strip()
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")

    if not name or not email or not password:
        return jsonify({"success": False, "error": "Name, email and password are required"}), 400

    if not EMAIL_PATTERN.match(email):
        return jsonify({"success": False, "error": "Please add a valid email", "field": "email"}), 400

    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({
            "success": False,
            "error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            "field": "password"
        }), 400

    if db.query(User).filter(User.email == email).first():
        return jsonify({"success": False, "error": "An account with this email already exists"}), 409

    user = User(name=name, email=email, password_hash=User.hash_password(password))
    db.add(user)
    db.commit()
    db.refresh(user)

    # every account starts with an empty profile
    db.add(Profile(user_id=user.id))
    db.commit()

    logger.info(f"Registered user {user.id}")
    token = create_access_token(user.id, user.role)
    return auth_response(user, token, "Registration successful! You are now logged in.", 201)


@app.route("/api/auth/login", methods=["POST"])
def login():
    db = get_db()
    try:
        data = get_json_body()
    except ValidationError as e:
        return validation_error_response(e)
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")

    if not email or not password:
        return jsonify({"success": False, "error": "Please provide both email and password"}), 400

    user = db.query(User).filter(User.email == email).first()
    if not user or not user.verify_password(password):
        logger.warning("Failed login attempt")
        return jsonify({"success": False, "error": "Incorrect credentials"}), 401

    token = create_access_token(user.id, user.role)
    user.last_login = datetime.utcnow()
    db.commit()

    return auth_response(user, token, "Login successful!", 200)


@app.route("/api/auth/me", methods=["GET"])
@login_required
def get_current_user_info(ctx):
    """Get current authenticated user's info."""
    db = get_db()
    user = db.query(User).filter(User.id == ctx.user_id).first()
    profile = db.query(Profile).filter(Profile.user_id == ctx.user_id).first()

    return jsonify({
        "success": True,
        "user": user.to_dict(),
        "profile": profile.to_dict() if profile else None,
    }), 200


@app.route("/api/auth/logout", methods=["POST"])
def logout():
    """Logout endpoint (JWT is stateless, so this is mainly for frontend)."""
    return jsonify({"success": True, "message": "Logged out successfully"}), 200


@app.route("/api/auth/refresh", methods=["POST"])
@login_required
def refresh_token(ctx):
    """Refresh access token using current JWT."""
    new_access_token = create_access_token(ctx.user_id, ctx.role)
    return jsonify({
        "success": True,
        "accessToken": new_access_token,
        "refreshTokenSetCookie": False,
    }), 200


@app.route("/api/auth/forgotpassword", methods=["POST"])
def forgot_password():
    """Issue a password reset link. The response never reveals whether the account exists."""
    db = get_db()
    try:
        data = get_json_body()
    except ValidationError as e:
        return validation_error_response(e)
    email = str(data.get("email") or "").strip().lower()
    message = "If an account exists, a reset link has been sent."

    user = db.query(User).filter(User.email == email).first() if email else None
    if not user:
        return jsonify({"success": True, "message": message}), 200

    reset_token = secrets.token_hex(20)
    user.reset_password_token = hash_reset_token(reset_token)
    user.reset_password_expire = datetime.utcnow() + timedelta(minutes=config.RESET_TOKEN_MINUTES)
    db.commit()

    # No mail transport: the link goes to the log
    reset_url = f"{config.FRONTEND_URL.rstrip('/')}/resetpassword/{reset_token}"
    logger.info(f"Password reset link for user {user.id}: {reset_url}")

    return jsonify({"success": True, "message": message}), 200


@app.route("/api/auth/resetpassword/<reset_token>", methods=["PUT"])
def reset_password(reset_token):
    """Set a new password using the token from the reset link."""
    db = get_db()
    try:
        data = get_json_body()
    except ValidationError as e:
        return validation_error_response(e)
    new_password = str(data.get("newPassword") or "")

    user = db.query(User).filter(
        User.reset_password_token == hash_reset_token(reset_token),
        User.reset_password_expire > datetime.utcnow()
    ).first()

    if not user:
        return jsonify({"success": False, "error": "Invalid or expired reset token"}), 400

    if len(new_password) < MIN_PASSWORD_LENGTH:
        return jsonify({
            "success": False,
            "error": f"Please provide a password of at least {MIN_PASSWORD_LENGTH} characters",
            "field": "newPassword"
        }), 400

    user.password_hash = User.hash_password(new_password)
    user.reset_password_token = None
    user.reset_password_expire = None
    db.commit()

    logger.info(f"Password reset for user {user.id}")
    token = create_access_token(user.id, user.role)
    return jsonify({
        "success": True,
        "message": "Password successfully reset. You are now logged in.",
        "accessToken": token,
    }), 200


# --- PROFILE ENDPOINTS ---
def _load_profile(db, user_id):
    profile = db.query(Profile).filter(Profile.user_id == user_id).first()
    if not profile:
        profile = Profile(user_id=user_id)
        db.add(profile)
        db.commit()
        db.refresh(profile)
    return profile


@app.route("/api/profile", methods=["GET"])
@login_required
def get_profile(ctx):
    """Get user profile."""
    profile = _load_profile(get_db(), ctx.user_id)
    return jsonify({**profile.to_dict(), "name": ctx.name}), 200


@app.route("/api/profile/me", methods=["GET"])
@login_required
def get_my_profile(ctx):
    """Profile wrapped the way the settings page reads it."""
    profile = _load_profile(get_db(), ctx.user_id)
    return jsonify({
        "success": True,
        "data": {"name": ctx.name, "profile": profile.to_dict()},
    }), 200


@app.route("/api/profile", methods=["PUT", "PATCH"])
@login_required
def update_profile(ctx):
    """Update user profile."""
    try:
        update = ProfileUpdate.from_dict(get_json_body())
    except ValidationError as e:
        return validation_error_response(e)

    db = get_db()
    profile = _load_profile(db, ctx.user_id)
    profile.apply_update(update)
    if "name" in update:
        user = db.query(User).filter(User.id == ctx.user_id).first()
        user.name = update["name"]
    db.commit()

    return jsonify({
        "success": True,
        "message": "Profile updated successfully",
        "profile": profile.to_dict(),
    }), 200


# --- GENERATION ENDPOINTS ---
def all_blocked_response(outcome: AllBlockedResult):
    return jsonify({
        "success": True,
        "allBlocked": True,
        "message": outcome.message,
        "blockedIngredients": outcome.blocked,
    }), 200


def structured_response(mode, outcome, filter_result=None):
    """Serialize Parsed/Fallback; fallbacks are labeled as example content."""
    body = {
        "success": True,
        "mode": mode.value,
        "isFallback": outcome.is_fallback,
        "data": outcome.value.to_dict(),
    }
    if outcome.is_fallback:
        body["notice"] = FALLBACK_NOTICE
    if filter_result is not None:
        body["safeIngredients"] = filter_result.safe
        body["blockedIngredients"] = filter_result.blocked
    return jsonify(body), 200


@app.route("/api/recipes/generate", methods=["POST"])
@login_required
def generate_recipe(ctx):
    """
    Free-text recipe from the user's ingredients.

    Request JSON:
    {
        "ingredients": ["Chicken", "Rice", "Peanut"]
    }

    Response (success):
    {
        "success": true,
        "recipe": "...",
        "body": "...",
        "substitutes": "⭐ Ingredient Substitutes ...",
        "safeIngredients": [...],
        "blockedIngredients": [...]
    }
    """
    try:
        try:
            ingredient_request = IngredientRequest.from_dict(get_json_body())
            outcome, filter_result = recipe_service.generate_recipe_text(
                ingredient_request.ingredients, ctx.profile
            )
        except ValidationError as e:
            return validation_error_response(e)
        except ProviderError as e:
            logger.error(f"Recipe generation failed for user {ctx.user_id}: {e.message}")
            return jsonify({
                "success": False,
                "error": APOLOGY_MESSAGE,
                "type": "provider_error"
            }), 500

        if isinstance(outcome, AllBlockedResult):
            return all_blocked_response(outcome)

        return jsonify({
            "success": True,
            **outcome.to_dict(),
            "safeIngredients": filter_result.safe,
            "blockedIngredients": filter_result.blocked,
        }), 200

    except Exception as e:
        logger.exception(f"Unexpected error in /api/recipes/generate: {str(e)}")
        return jsonify({
            "success": False,
            "error": "Internal server error",
            "type": "internal_error"
        }), 500


@app.route("/api/recipes/structured", methods=["POST"])
@login_required
def generate_structured_recipe(ctx):
    """Full JSON recipe from the user's ingredients."""
    try:
        try:
            ingredient_request = IngredientRequest.from_dict(get_json_body())
        except ValidationError as e:
            return validation_error_response(e)

        outcome, filter_result = recipe_service.generate_structured_recipe(
            ingredient_request.ingredients, ctx.profile
        )
        if isinstance(outcome, AllBlockedResult):
            return all_blocked_response(outcome)
        return structured_response(PromptMode.STRUCTURED_RECIPE, outcome, filter_result)

    except Exception as e:
        logger.exception(f"Unexpected error in /api/recipes/structured: {str(e)}")
        return jsonify({
            "success": False,
            "error": "Internal server error",
            "type": "internal_error"
        }), 500


@app.route("/api/recipes/today", methods=["GET"])
@login_required
def recipe_of_the_day(ctx):
    """Recipe of the day for the current user. ?detailed=true returns a full recipe."""
    try:
        detailed = request.args.get("detailed", "false").strip().lower() in ("1", "true", "yes")
        pantry = [i.strip() for i in request.args.get("ingredients", "").split(",") if i.strip()]

        outcome, filter_result = recipe_service.recipe_of_the_day(
            ctx.profile, ctx.name, detailed=detailed, ingredients=pantry or None
        )
        if isinstance(outcome, AllBlockedResult):
            return all_blocked_response(outcome)
        return structured_response(PromptMode.RECIPE_OF_THE_DAY, outcome, filter_result if pantry else None)

    except Exception as e:
        logger.exception(f"Unexpected error in /api/recipes/today: {str(e)}")
        return jsonify({
            "success": False,
            "error": "Internal server error",
            "type": "internal_error"
        }), 500


@app.route("/api/substitutes", methods=["POST"])
@login_required
def suggest_substitutes(ctx):
    """Five profile-safe substitutes for one ingredient."""
    try:
        try:
            data = get_json_body()
            outcome, filter_result = recipe_service.suggest_substitutes(
                str(data.get("ingredient") or ""), ctx.profile
            )
        except ValidationError as e:
            return validation_error_response(e)
        return structured_response(PromptMode.SUBSTITUTE_LIST, outcome, filter_result)

    except Exception as e:
        logger.exception(f"Unexpected error in /api/substitutes: {str(e)}")
        return jsonify({
            "success": False,
            "error": "Internal server error",
            "type": "internal_error"
        }), 500


@app.route("/api/menu/analyze", methods=["POST"])
@login_required
def analyze_menu(ctx):
    """Classify each dish of a restaurant menu for the current user."""
    try:
        try:
            data = get_json_body()
            outcome = recipe_service.analyze_menu(str(data.get("menuText") or ""), ctx.profile)
        except ValidationError as e:
            return validation_error_response(e)
        return structured_response(PromptMode.MENU_ANALYSIS, outcome)

    except Exception as e:
        logger.exception(f"Unexpected error in /api/menu/analyze: {str(e)}")
        return jsonify({
            "success": False,
            "error": "Internal server error",
            "type": "internal_error"
        }), 500


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
    """Handle 405 errors."""
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
    debug = config.FLASK_ENV == "development"

    logger.info(f"Starting Flask app on port {config.PORT} (debug={debug})")
    logger.info(f"CORS allowed origins: {config.CORS_ORIGINS}")
    logger.info(f"Gemini API: {'configured' if config.GOOGLE_API_KEY else 'NOT SET'} (model {config.GEMINI_MODEL})")

    app.run(host="0.0.0.0", port=config.PORT, debug=debug)
