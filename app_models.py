"""
Data models and validation for HealthChef.
Holds the profile store tables, the request/response value types used by the
generation pipeline, and the schemas that model output is validated against.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any, Tuple
import re
import json
import logging
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, create_engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
import datetime
import bcrypt

from config import config

logger = logging.getLogger(__name__)

Base = declarative_base()

engine = create_engine(config.DATABASE_URL, echo=False)
SessionLocal = sessionmaker(bind=engine)


SPICE_LEVELS = ("mild", "medium", "spicy", "extra-spicy")
DEFAULT_SPICE = "medium"
TIME_OPTIONS = ("15-min", "30-min", "45-min", "60-min", "60-plus")
DEFAULT_TIME = "30-min"

EMAIL_PATTERN = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")
MIN_PASSWORD_LENGTH = 6
MAX_INGREDIENTS = 50
MAX_INGREDIENT_LENGTH = 100
MAX_MENU_LENGTH = 10000


class User(Base):
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)
    role = Column(String(32), default='user')
    is_active = Column(Boolean, default=True)
    last_login = Column(DateTime, nullable=True)
    reset_password_token = Column(String(64), nullable=True)
    reset_password_expire = Column(DateTime, nullable=True)
    profile = relationship('Profile', uselist=False, back_populates='user')

    def verify_password(self, password: str) -> bool:
        return bcrypt.checkpw(password.encode('utf-8'), self.password_hash.encode('utf-8'))

    @staticmethod
    def hash_password(password: str) -> str:
        return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def _load_tags(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unreadable profile tag column")
        return []
    return value if isinstance(value, list) else []


class Profile(Base):
    __tablename__ = 'profiles'
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), unique=True, nullable=False)
    dietary_restrictions = Column(Text)  # JSON array of tags
    health_conditions = Column(Text)  # JSON array of tags
    spice_preference = Column(String(32), default=DEFAULT_SPICE)
    cuisine_types = Column(Text)  # JSON array of labels
    time_availability = Column(String(32), default=DEFAULT_TIME)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)
    user = relationship('User', back_populates='profile')

    def to_dict(self):
        profile = self.to_user_profile()
        return {
            "id": self.id,
            "userId": self.user_id,
            **profile.to_dict(),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def to_user_profile(self) -> "UserProfile":
        return UserProfile.from_dict({
            "dietaryRestrictions": _load_tags(self.dietary_restrictions),
            "healthConditions": _load_tags(self.health_conditions),
            "spicePreference": self.spice_preference,
            "cuisineTypes": _load_tags(self.cuisine_types),
            "timeAvailability": self.time_availability,
        })

    def apply_update(self, update: Dict[str, Any]) -> None:
        """Copy validated ProfileUpdate fields onto the row."""
        if "dietaryRestrictions" in update:
            self.dietary_restrictions = json.dumps(update["dietaryRestrictions"])
        if "healthConditions" in update:
            self.health_conditions = json.dumps(update["healthConditions"])
        if "cuisineTypes" in update:
            self.cuisine_types = json.dumps(update["cuisineTypes"])
        if "spicePreference" in update:
            self.spice_preference = update["spicePreference"]
        if "timeAvailability" in update:
            self.time_availability = update["timeAvailability"]


def init_db():
    Base.metadata.create_all(bind=engine)


# --- ERRORS ---

class ValidationError(Exception):
    """Custom exception for validation errors."""
    def __init__(self, message: str, field: str = None):
        self.message = message
        self.field = field
        super().__init__(self.message)


class InputError(ValidationError):
    """Empty ingredient list, menu text or ingredient name."""
    pass


class SchemaMismatch(ValidationError):
    """Model output is not shaped like the schema requested for its mode."""
    pass


class APIError(Exception):
    """Base exception for API errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ExternalAPIError(APIError):
    """Exception for external API failures."""
    pass


class ProviderError(ExternalAPIError):
    """The hosted language model failed, timed out or returned nothing usable."""
    pass


# --- PIPELINE VALUE TYPES ---

class ResponseShape(str, Enum):
    FREE_TEXT = "free-text"
    JSON_OBJECT = "json-object"


class PromptMode(str, Enum):
    """Closed set of templates the prompt composer can render."""
    FREE_TEXT_RECIPE = "free-text-recipe"
    STRUCTURED_RECIPE = "structured-recipe"
    RECIPE_OF_THE_DAY = "recipe-of-the-day"
    SUBSTITUTE_LIST = "substitute-list"
    MENU_ANALYSIS = "menu-analysis"

    @property
    def response_shape(self) -> ResponseShape:
        if self is PromptMode.FREE_TEXT_RECIPE:
            return ResponseShape.FREE_TEXT
        return ResponseShape.JSON_OBJECT


def _as_tags(value: Any, lower: bool = False) -> Tuple[str, ...]:
    """Normalize a list-ish profile field into an ordered, de-duplicated tuple."""
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple, set, frozenset)):
        return ()
    tags = []
    for item in value:
        tag = str(item).strip()
        if lower:
            tag = tag.lower()
        if tag and tag not in tags:
            tags.append(tag)
    return tuple(tags)


@dataclass(frozen=True)
class UserProfile:
    """Read-only view of a user's profile as consumed by the pipeline.

    Every field has a default, so a partial or missing profile never breaks
    prompt composition or filtering.
    """
    dietary_restrictions: Tuple[str, ...] = ()
    health_conditions: Tuple[str, ...] = ()
    spice_preference: str = DEFAULT_SPICE
    cuisine_types: Tuple[str, ...] = ()
    time_availability: str = DEFAULT_TIME

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> "UserProfile":
        data = data or {}

        spice = str(data.get("spicePreference") or DEFAULT_SPICE).strip().lower()
        if spice not in SPICE_LEVELS:
            logger.info(f"Unknown spice preference '{spice}', using {DEFAULT_SPICE}")
            spice = DEFAULT_SPICE

        time_budget = str(data.get("timeAvailability") or DEFAULT_TIME).strip().lower()
        if time_budget not in TIME_OPTIONS:
            logger.info(f"Unknown time availability '{time_budget}', using {DEFAULT_TIME}")
            time_budget = DEFAULT_TIME

        return UserProfile(
            dietary_restrictions=_as_tags(data.get("dietaryRestrictions"), lower=True),
            health_conditions=_as_tags(data.get("healthConditions"), lower=True),
            spice_preference=spice,
            cuisine_types=_as_tags(data.get("cuisineTypes")),
            time_availability=time_budget,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dietaryRestrictions": list(self.dietary_restrictions),
            "healthConditions": list(self.health_conditions),
            "spicePreference": self.spice_preference,
            "cuisineTypes": list(self.cuisine_types),
            "timeAvailability": self.time_availability,
        }


class ProfileUpdate:
    """Validation for PUT/PATCH /api/profile bodies."""

    LIST_FIELDS = ("dietaryRestrictions", "healthConditions", "cuisineTypes")

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate a profile update payload.

        Args:
            data: Dictionary from JSON request

        Returns:
            Dictionary holding only the fields present in the payload

        Raises:
            ValidationError: If any field fails validation
        """
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        update = {}

        for key in ProfileUpdate.LIST_FIELDS:
            if key not in data:
                continue
            value = data[key]
            if not isinstance(value, list):
                raise ValidationError(f"{key} must be an array", key)
            if any(not isinstance(item, str) for item in value):
                raise ValidationError(f"{key} must contain only strings", key)
            update[key] = list(_as_tags(value))

        if "spicePreference" in data:
            spice = str(data["spicePreference"]).strip().lower()
            if spice not in SPICE_LEVELS:
                raise ValidationError(
                    f"spicePreference must be one of: {', '.join(SPICE_LEVELS)}",
                    "spicePreference"
                )
            update["spicePreference"] = spice

        if "timeAvailability" in data:
            time_budget = str(data["timeAvailability"]).strip().lower()
            if time_budget not in TIME_OPTIONS:
                raise ValidationError(
                    f"timeAvailability must be one of: {', '.join(TIME_OPTIONS)}",
                    "timeAvailability"
                )
            update["timeAvailability"] = time_budget

        if "name" in data:
            name = str(data["name"] or "").strip()
            if not (1 <= len(name) <= 100):
                raise ValidationError("name must be 1-100 characters", "name")
            update["name"] = name

        return update


@dataclass
class IngredientRequest:
    """Ordered ingredient names as typed by the user. Duplicates are kept."""
    ingredients: List[str]

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "IngredientRequest":
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        raw = data.get("ingredients")
        if raw is None:
            raise InputError("Please add at least one ingredient", "ingredients")
        if not isinstance(raw, list):
            raise ValidationError("ingredients must be an array", "ingredients")
        if len(raw) > MAX_INGREDIENTS:
            raise ValidationError(
                f"ingredients must contain at most {MAX_INGREDIENTS} items",
                "ingredients"
            )

        ingredients = []
        for item in raw:
            if not isinstance(item, str):
                raise ValidationError("ingredients must contain only strings", "ingredients")
            name = item.strip()
            if not name:
                continue
            if len(name) > MAX_INGREDIENT_LENGTH:
                raise ValidationError(
                    f"Ingredient names must be at most {MAX_INGREDIENT_LENGTH} characters",
                    "ingredients"
                )
            ingredients.append(name)

        if not ingredients:
            raise InputError("Please add at least one ingredient", "ingredients")
        return IngredientRequest(ingredients=ingredients)


@dataclass
class FilterResult:
    """Partition of an ingredient request; both lists keep input order."""
    safe: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    blocked_by: List[str] = field(default_factory=list)  # restriction tag per blocked entry

    @property
    def all_blocked(self) -> bool:
        return bool(self.blocked) and not self.safe


@dataclass
class GenerationRequest:
    prompt: str
    response_shape: ResponseShape
    temperature: float
    mode: PromptMode


@dataclass(frozen=True)
class RequestContext:
    """Credential and profile threaded explicitly through a protected request."""
    user_id: int
    name: str
    email: str
    role: str
    token: str
    profile: UserProfile


# --- RESULT SCHEMAS ---

def _require(data: Any, key: str, context: str) -> Any:
    if not isinstance(data, dict):
        raise SchemaMismatch(f"{context} must be an object", context)
    if key not in data or data[key] is None:
        raise SchemaMismatch(f"{context} is missing '{key}'", key)
    return data[key]


def _text(value: Any, key: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise SchemaMismatch(f"'{key}' must be text", key)
    return str(value).strip()


def _required_text(data: Any, key: str, context: str) -> str:
    value = _text(_require(data, key, context), key)
    if not value:
        raise SchemaMismatch(f"{context} has an empty '{key}'", key)
    return value


def _optional_text(data: Dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    if value is None:
        return default
    return _text(value, key)


def _text_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise SchemaMismatch(f"'{key}' must be an array", key)
    return [_text(item, key) for item in value]


def _object_list(value: Any, key: str) -> List[Dict[str, Any]]:
    if not isinstance(value, list) or not value:
        raise SchemaMismatch(f"'{key}' must be a non-empty array", key)
    for item in value:
        if not isinstance(item, dict):
            raise SchemaMismatch(f"'{key}' entries must be objects", key)
    return value


@dataclass
class RecipeIngredient:
    name: str
    amount: str = ""
    unit: str = ""
    notes: str = ""

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "RecipeIngredient":
        return RecipeIngredient(
            name=_required_text(data, "name", "ingredient"),
            amount=_optional_text(data, "amount"),
            unit=_optional_text(data, "unit"),
            notes=_optional_text(data, "notes"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "amount": self.amount, "unit": self.unit, "notes": self.notes}


@dataclass
class RecipeStep:
    step: int
    instruction: str
    duration: str = ""
    tip: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, Any], position: int) -> "RecipeStep":
        number = data.get("step", position)
        try:
            number = int(number)
        except (TypeError, ValueError, OverflowError):
            number = position
        tip = _optional_text(data, "tip")
        return RecipeStep(
            step=number,
            instruction=_required_text(data, "instruction", "step"),
            duration=_optional_text(data, "duration"),
            tip=tip or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"step": self.step, "instruction": self.instruction, "duration": self.duration, "tip": self.tip}


@dataclass
class NutritionEstimate:
    """Per-serving estimate, values kept as the model phrased them."""
    calories: str = ""
    protein: str = ""
    carbs: str = ""
    fat: str = ""

    @staticmethod
    def from_dict(data: Any) -> "NutritionEstimate":
        if not isinstance(data, dict):
            raise SchemaMismatch("'nutrition' must be an object", "nutrition")
        return NutritionEstimate(
            calories=_optional_text(data, "calories"),
            protein=_optional_text(data, "protein"),
            carbs=_optional_text(data, "carbs"),
            fat=_optional_text(data, "fat"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"calories": self.calories, "protein": self.protein, "carbs": self.carbs, "fat": self.fat}


@dataclass
class StructuredRecipe:
    """Full recipe with quantities, timed steps and a nutrition estimate."""
    title: str
    description: str
    difficulty: str
    prep_time: str
    cook_time: str
    total_time: str
    servings: str
    ingredients: List[RecipeIngredient]
    steps: List[RecipeStep]
    nutrition: NutritionEstimate
    tips: List[str] = field(default_factory=list)
    substitutes: Dict[str, str] = field(default_factory=dict)

    REQUIRED_KEYS = ("title", "description", "difficulty", "prepTime", "cookTime",
                     "ingredients", "steps", "nutrition")

    @staticmethod
    def from_dict(data: Any) -> "StructuredRecipe":
        """
        Validate a parsed model response against the structured recipe schema.

        Raises:
            SchemaMismatch: If a required key is missing or mistyped
        """
        for key in StructuredRecipe.REQUIRED_KEYS:
            _require(data, key, "recipe")

        substitutes = data.get("substitutes") or {}
        if not isinstance(substitutes, dict):
            raise SchemaMismatch("'substitutes' must be an object", "substitutes")

        return StructuredRecipe(
            title=_required_text(data, "title", "recipe"),
            description=_required_text(data, "description", "recipe"),
            difficulty=_required_text(data, "difficulty", "recipe"),
            prep_time=_required_text(data, "prepTime", "recipe"),
            cook_time=_required_text(data, "cookTime", "recipe"),
            total_time=_optional_text(data, "totalTime"),
            servings=_optional_text(data, "servings"),
            ingredients=[RecipeIngredient.from_dict(i) for i in _object_list(data["ingredients"], "ingredients")],
            steps=[
                RecipeStep.from_dict(s, position)
                for position, s in enumerate(_object_list(data["steps"], "steps"), start=1)
            ],
            nutrition=NutritionEstimate.from_dict(data["nutrition"]),
            tips=_text_list(data.get("tips"), "tips"),
            substitutes={str(k): _text(v, "substitutes") for k, v in substitutes.items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "difficulty": self.difficulty,
            "prepTime": self.prep_time,
            "cookTime": self.cook_time,
            "totalTime": self.total_time,
            "servings": self.servings,
            "ingredients": [i.to_dict() for i in self.ingredients],
            "steps": [s.to_dict() for s in self.steps],
            "nutrition": self.nutrition.to_dict(),
            "tips": list(self.tips),
            "substitutes": dict(self.substitutes),
        }


@dataclass
class RecipeSuggestion:
    """Lightweight recipe-of-the-day card."""
    title: str
    description: str
    cook_time: str = ""
    difficulty: str = ""
    tags: List[str] = field(default_factory=list)
    health_benefit: str = ""

    @staticmethod
    def from_dict(data: Any) -> "RecipeSuggestion":
        return RecipeSuggestion(
            title=_required_text(data, "title", "suggestion"),
            description=_required_text(data, "description", "suggestion"),
            cook_time=_optional_text(data, "cookTime"),
            difficulty=_optional_text(data, "difficulty"),
            tags=_text_list(data.get("tags"), "tags"),
            health_benefit=_optional_text(data, "healthBenefit"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "cookTime": self.cook_time,
            "difficulty": self.difficulty,
            "tags": list(self.tags),
            "healthBenefit": self.health_benefit,
        }


@dataclass
class SubstituteOption:
    name: str
    reason: str
    ratio: str

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SubstituteOption":
        return SubstituteOption(
            name=_required_text(data, "name", "substitute"),
            reason=_required_text(data, "reason", "substitute"),
            ratio=_required_text(data, "ratio", "substitute"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "reason": self.reason, "ratio": self.ratio}


@dataclass
class SubstituteList:
    ingredient: str
    substitutes: List[SubstituteOption]

    COUNT = 5

    @staticmethod
    def from_dict(data: Any) -> "SubstituteList":
        options = _object_list(_require(data, "substitutes", "substitute list"), "substitutes")
        if len(options) != SubstituteList.COUNT:
            raise SchemaMismatch(
                f"expected exactly {SubstituteList.COUNT} substitutes, got {len(options)}",
                "substitutes"
            )
        return SubstituteList(
            ingredient=_required_text(data, "ingredient", "substitute list"),
            substitutes=[SubstituteOption.from_dict(o) for o in options],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"ingredient": self.ingredient, "substitutes": [s.to_dict() for s in self.substitutes]}


DISH_CLASSIFICATIONS = ("safe", "caution", "avoid")


@dataclass
class MenuDish:
    name: str
    classification: str
    ingredients: List[str] = field(default_factory=list)
    reason: str = ""
    substitutions: List[str] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "MenuDish":
        classification = _required_text(data, "classification", "dish").lower()
        if classification not in DISH_CLASSIFICATIONS:
            raise SchemaMismatch(
                f"dish classification must be one of {', '.join(DISH_CLASSIFICATIONS)}",
                "classification"
            )
        return MenuDish(
            name=_required_text(data, "name", "dish"),
            classification=classification,
            ingredients=_text_list(data.get("ingredients"), "ingredients"),
            reason=_optional_text(data, "reason"),
            substitutions=_text_list(data.get("substitutions"), "substitutions"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "classification": self.classification,
            "ingredients": list(self.ingredients),
            "reason": self.reason,
            "substitutions": list(self.substitutions),
        }


@dataclass
class MenuAnalysis:
    dishes: List[MenuDish]
    recommendations: List[str]
    restaurant: str = ""

    @staticmethod
    def from_dict(data: Any) -> "MenuAnalysis":
        dishes = _object_list(_require(data, "dishes", "menu analysis"), "dishes")
        return MenuAnalysis(
            dishes=[MenuDish.from_dict(d) for d in dishes],
            recommendations=_text_list(_require(data, "recommendations", "menu analysis"), "recommendations"),
            restaurant=_optional_text(data, "restaurant"),
        )

    def summary(self) -> Dict[str, int]:
        counts = {label: 0 for label in DISH_CLASSIFICATIONS}
        for dish in self.dishes:
            counts[dish.classification] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restaurant": self.restaurant,
            "dishes": [d.to_dict() for d in self.dishes],
            "recommendations": list(self.recommendations),
            "summary": self.summary(),
        }


@dataclass
class Parsed:
    """Model output that passed schema validation."""
    value: Any

    @property
    def is_fallback(self) -> bool:
        return False


@dataclass
class Fallback:
    """Static example payload returned in place of unusable model output."""
    value: Any
    reason: str

    @property
    def is_fallback(self) -> bool:
        return True


@dataclass
class FreeTextRecipe:
    body: str
    substitutes: str

    @property
    def text(self) -> str:
        return f"{self.body}\n\n{self.substitutes}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {"recipe": self.text, "body": self.body, "substitutes": self.substitutes}


@dataclass
class AllBlockedResult:
    """Every requested ingredient conflicted with the profile; nothing was generated."""
    blocked: List[str]
    message: str
