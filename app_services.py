"""
Service layer for recipe generation.
Handles ingredient safety filtering, Gemini calls and interpretation of
what the model sends back.
"""

import copy
import json
import logging
import re
from typing import List, Dict, Any, Optional, Sequence, Tuple, Union

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from app_models import (
    UserProfile, FilterResult, GenerationRequest, PromptMode, ResponseShape,
    StructuredRecipe, RecipeSuggestion, SubstituteList, MenuAnalysis,
    Parsed, Fallback, FreeTextRecipe, AllBlockedResult,
    InputError, ValidationError, SchemaMismatch, ProviderError, MAX_MENU_LENGTH, MAX_INGREDIENT_LENGTH,
)
from app_prompts import SUBSTITUTES_MARKER, compose, temperature_for, response_shape_for

logger = logging.getLogger(__name__)

StructuredOutcome = Union[Parsed, Fallback, AllBlockedResult]

# Restriction tag -> lower-case substrings that block an ingredient.
# Checked in this order; the first matching tag blocks the ingredient.
RESTRICTION_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "nut-free": ("nut", "almond", "peanut"),
    "dairy-free": ("milk", "cheese", "butter", "yogurt"),
    "gluten-free": ("wheat", "flour", "bread", "pasta"),
}

APOLOGY_MESSAGE = "Sorry, we couldn't generate a recipe right now. Please try again in a moment."
FALLBACK_NOTICE = "We couldn't create a personalized result right now, so here is an example instead."


def filter_ingredients(ingredients: Sequence[str], restrictions: Sequence[str]) -> FilterResult:
    """
    Split ingredients into safe and blocked lists for a set of restriction tags.

    Matching is a lower-case substring test against RESTRICTION_KEYWORDS. Tags
    missing from that table do not filter anything.

    Args:
        ingredients: Ingredient names in the order the user entered them
        restrictions: Dietary restriction tags from the profile

    Returns:
        FilterResult with input order preserved in both lists
    """
    active = {str(tag).strip().lower() for tag in restrictions or ()}
    rules = [(tag, keywords) for tag, keywords in RESTRICTION_KEYWORDS.items() if tag in active]

    result = FilterResult()
    for ingredient in ingredients:
        lowered = ingredient.lower()
        for tag, keywords in rules:
            if any(keyword in lowered for keyword in keywords):
                result.blocked.append(ingredient)
                result.blocked_by.append(tag)
                break
        else:
            result.safe.append(ingredient)
    return result


def split_substitutes(text: str) -> FreeTextRecipe:
    """Split a free-text recipe at the first SUBSTITUTES_MARKER heading.

    The substitutes part keeps the heading. Without the marker the whole
    text is the body.
    """
    index = text.find(SUBSTITUTES_MARKER)
    if index == -1:
        return FreeTextRecipe(body=text, substitutes="")
    return FreeTextRecipe(body=text[:index].strip(), substitutes=text[index:].strip())


# --- FALLBACK PAYLOADS ---

FALLBACK_RECIPE: Dict[str, Any] = {
    "title": "Mediterranean Quinoa Bowl",
    "description": "A bright, fiber-rich bowl of quinoa, chickpeas and crunchy vegetables with a lemon dressing.",
    "difficulty": "easy",
    "prepTime": "10 minutes",
    "cookTime": "15 minutes",
    "totalTime": "25 minutes",
    "servings": 2,
    "ingredients": [
        {"name": "Quinoa", "amount": "1", "unit": "cup", "notes": "rinsed"},
        {"name": "Chickpeas", "amount": "1", "unit": "can", "notes": "drained and rinsed"},
        {"name": "Cucumber", "amount": "1", "unit": "", "notes": "diced"},
        {"name": "Cherry tomatoes", "amount": "1", "unit": "cup", "notes": "halved"},
        {"name": "Red onion", "amount": "1/4", "unit": "", "notes": "finely sliced"},
        {"name": "Olive oil", "amount": "2", "unit": "tbsp", "notes": ""},
        {"name": "Lemon juice", "amount": "2", "unit": "tbsp", "notes": "fresh"},
        {"name": "Parsley", "amount": "1", "unit": "handful", "notes": "chopped"},
    ],
    "steps": [
        {"step": 1, "instruction": "Simmer the quinoa in 2 cups of water until the water is absorbed.",
         "duration": "15 minutes", "tip": "Fluff with a fork and let it steam, covered, for 5 minutes."},
        {"step": 2, "instruction": "Dice the cucumber, halve the tomatoes and slice the onion.",
         "duration": "5 minutes", "tip": None},
        {"step": 3, "instruction": "Whisk the olive oil and lemon juice together.",
         "duration": "1 minute", "tip": None},
        {"step": 4, "instruction": "Toss the quinoa, chickpeas and vegetables with the dressing and parsley.",
         "duration": "2 minutes", "tip": "Serve warm or chilled."},
    ],
    "nutrition": {"calories": "480 kcal", "protein": "18 g", "carbs": "68 g", "fat": "16 g"},
    "tips": ["Add herbs and spices instead of salt for flavor."],
    "substitutes": {"Quinoa": "Brown rice", "Chickpeas": "White beans"},
}

FALLBACK_SUGGESTION: Dict[str, Any] = {
    "title": "Mediterranean Quinoa Bowl",
    "description": "Quinoa, chickpeas and crisp vegetables tossed in a lemon and olive oil dressing.",
    "cookTime": "25 minutes",
    "difficulty": "easy",
    "tags": ["Vegan", "Heart Healthy"],
    "healthBenefit": "High in fiber and plant protein with no added sugar.",
}

FALLBACK_SUBSTITUTES: Dict[str, Any] = {
    "ingredient": "Butter",
    "substitutes": [
        {"name": "Olive oil", "reason": "Heart-healthy unsaturated fat for sauteing and roasting.", "ratio": "3/4 cup per 1 cup butter"},
        {"name": "Avocado", "reason": "Creamy texture with fiber and potassium.", "ratio": "1:1"},
        {"name": "Unsweetened applesauce", "reason": "Cuts fat in baking while keeping moisture.", "ratio": "1/2 cup per 1 cup butter"},
        {"name": "Coconut oil", "reason": "Dairy-free and solid at room temperature like butter.", "ratio": "1:1"},
        {"name": "Mashed banana", "reason": "Adds moisture and natural sweetness to baked goods.", "ratio": "1:1"},
    ],
}

FALLBACK_MENU: Dict[str, Any] = {
    "restaurant": "Spice Garden Indian & Mediterranean Restaurant",
    "dishes": [
        {"name": "Grilled Salmon with Quinoa", "classification": "safe",
         "ingredients": ["salmon", "quinoa", "vegetables"],
         "reason": "Lean protein and whole grains.", "substitutions": []},
        {"name": "Chicken Tikka Masala", "classification": "safe",
         "ingredients": ["chicken", "tomato", "cream", "basmati rice"],
         "reason": "Good protein; ask about the amount of cream.", "substitutions": ["Ask for the sauce on the side"]},
        {"name": "Palak Paneer", "classification": "caution",
         "ingredients": ["spinach", "paneer", "cream", "spices"],
         "reason": "Paneer and cream are dairy and high in saturated fat.",
         "substitutions": ["Swap paneer for tofu", "Ask for no cream"]},
        {"name": "Dal Tadka", "classification": "safe",
         "ingredients": ["yellow lentils", "garlic", "cumin", "ghee"],
         "reason": "Lentils are high in fiber and plant protein.", "substitutions": ["Ask for oil instead of ghee"]},
    ],
    "recommendations": [
        "Choose grilled dishes over fried ones.",
        "Ask for sauces and dressings on the side.",
    ],
}


def _schema_for(mode: PromptMode, detailed: bool = False):
    if mode is PromptMode.STRUCTURED_RECIPE:
        return StructuredRecipe
    if mode is PromptMode.RECIPE_OF_THE_DAY:
        return StructuredRecipe if detailed else RecipeSuggestion
    if mode is PromptMode.SUBSTITUTE_LIST:
        return SubstituteList
    if mode is PromptMode.MENU_ANALYSIS:
        return MenuAnalysis
    raise ValueError(f"{mode.value} has no structured schema")


def _fallback_payload(mode: PromptMode, detailed: bool = False) -> Dict[str, Any]:
    if mode is PromptMode.STRUCTURED_RECIPE:
        return FALLBACK_RECIPE
    if mode is PromptMode.RECIPE_OF_THE_DAY:
        return FALLBACK_RECIPE if detailed else FALLBACK_SUGGESTION
    if mode is PromptMode.SUBSTITUTE_LIST:
        return FALLBACK_SUBSTITUTES
    if mode is PromptMode.MENU_ANALYSIS:
        return FALLBACK_MENU
    raise ValueError(f"{mode.value} has no fallback payload")


def fallback_for(mode: PromptMode, reason: str, detailed: bool = False) -> Fallback:
    payload = copy.deepcopy(_fallback_payload(mode, detailed))
    return Fallback(value=_schema_for(mode, detailed).from_dict(payload), reason=reason)


def _parse_json(raw: str) -> Any:
    try:
        return json.loads(raw.strip())
    except json.JSONDecodeError:
        # Gemini sometimes wraps the object in prose or a code fence
        json_match = re.search(r'\{.*\}', raw, re.DOTALL)
        if json_match:
            return json.loads(json_match.group())
        raise


def interpret(raw: Optional[str], mode: PromptMode, detailed: bool = False) -> Union[FreeTextRecipe, Parsed, Fallback]:
    """
    Turn raw model output into the result type for its mode.

    Structured modes never raise: unparseable JSON or a schema mismatch
    yields the static fallback payload for that mode.

    Args:
        raw: Text returned by the generation client
        mode: Mode the prompt was composed for
        detailed: Recipe-of-the-day expects a full recipe

    Returns:
        FreeTextRecipe for free-text mode, otherwise Parsed or Fallback
    """
    mode = PromptMode(mode)
    raw = raw or ""

    if mode.response_shape is ResponseShape.FREE_TEXT:
        return split_substitutes(raw)

    schema = _schema_for(mode, detailed)
    try:
        data = _parse_json(raw)
        return Parsed(value=schema.from_dict(data))
    except (json.JSONDecodeError, RecursionError) as e:
        logger.warning(f"Model returned invalid JSON for {mode.value}: {str(e)}")
        return fallback_for(mode, "invalid_json", detailed)
    except SchemaMismatch as e:
        logger.warning(f"Model response for {mode.value} failed validation: {e.message}")
        return fallback_for(mode, "schema_mismatch", detailed)


class GeminiService:
    """Handle all Gemini API calls."""

    def __init__(self, api_key: Optional[str], model: str = "gemini-2.0-flash", timeout_seconds: float = 30.0):
        """Store settings; the client is created on first use."""
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client = None

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise ProviderError("Gemini API key is not configured", 503)
            self._client = genai.Client(
                api_key=self.api_key,
                http_options=types.HttpOptions(timeout=int(self.timeout_seconds * 1000)),
            )
        return self._client

    def generate(self, request: GenerationRequest) -> str:
        """
        Send one prompt to Gemini. Single attempt, no retries.

        Args:
            request: Prompt, expected response shape and temperature

        Returns:
            Raw response text

        Raises:
            ProviderError: On network errors, timeouts, non-2xx responses or empty output
        """
        mime_type = "application/json" if request.response_shape is ResponseShape.JSON_OBJECT else "text/plain"
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=request.prompt,
                config=types.GenerateContentConfig(
                    temperature=request.temperature,
                    response_mime_type=mime_type,
                ),
            )
        except ProviderError:
            raise
        except genai_errors.APIError as e:
            logger.error(f"Gemini returned HTTP {e.code} for {request.mode.value}: {str(e)}")
            raise ProviderError(f"Gemini API error (HTTP {e.code})", 502)
        except Exception as e:
            logger.error(f"Gemini request failed for {request.mode.value}: {str(e)}")
            raise ProviderError(f"Gemini request failed: {str(e)}", 502)

        text = (response.text or "").strip()
        if not text:
            logger.error(f"Gemini returned an empty response for {request.mode.value}")
            raise ProviderError("Gemini returned an empty response", 502)

        logger.info(f"Gemini returned {len(text)} characters for {request.mode.value}")
        return text


def all_blocked_message(result: FilterResult) -> str:
    listed = ", ".join(
        f"{ingredient} ({tag})" for ingredient, tag in zip(result.blocked, result.blocked_by)
    )
    return (
        f"All of your ingredients conflict with your dietary restrictions: {listed}. "
        "Please add some other ingredients and try again."
    )


class RecipeService:
    """High-level generation orchestration: filter → compose → generate → interpret."""

    def __init__(self, generator):
        """Initialize with a generation client exposing generate(GenerationRequest) -> str."""
        self.generator = generator

    def _filter(self, ingredients: List[str], profile: UserProfile) -> FilterResult:
        if not ingredients:
            raise InputError("Please add at least one ingredient", "ingredients")
        result = filter_ingredients(ingredients, profile.dietary_restrictions)
        logger.info(f"Safety filter kept {len(result.safe)} and blocked {len(result.blocked)} ingredient(s)")
        return result

    def _generate(self, prompt: str, mode: PromptMode) -> str:
        request = GenerationRequest(
            prompt=prompt,
            response_shape=response_shape_for(mode),
            temperature=temperature_for(mode),
            mode=mode,
        )
        logger.info(f"Requesting {mode.value} generation ({len(prompt)} prompt characters)")
        return self.generator.generate(request)

    def _structured(self, prompt: str, mode: PromptMode, detailed: bool = False) -> Union[Parsed, Fallback]:
        try:
            raw = self._generate(prompt, mode)
        except ProviderError as e:
            logger.warning(f"Using fallback for {mode.value}: {e.message}")
            return fallback_for(mode, "provider_error", detailed)
        return interpret(raw, mode, detailed)

    def _blocked(self, result: FilterResult) -> AllBlockedResult:
        logger.info(f"All {len(result.blocked)} ingredient(s) blocked; skipping generation")
        return AllBlockedResult(blocked=list(result.blocked), message=all_blocked_message(result))

    def generate_recipe_text(
        self,
        ingredients: List[str],
        profile: UserProfile
    ) -> Tuple[Union[FreeTextRecipe, AllBlockedResult], FilterResult]:
        """
        Free-text recipe with a trailing substitutes section.

        Raises:
            InputError: If no ingredients were given
            ProviderError: If Gemini fails; this mode has no fallback payload
        """
        mode = PromptMode.FREE_TEXT_RECIPE
        result = self._filter(ingredients, profile)
        if result.all_blocked:
            return self._blocked(result), result

        prompt = compose(profile, result.safe, result.blocked, mode)
        raw = self._generate(prompt, mode)
        return interpret(raw, mode), result

    def generate_structured_recipe(
        self,
        ingredients: List[str],
        profile: UserProfile
    ) -> Tuple[StructuredOutcome, FilterResult]:
        """Full JSON recipe; falls back to the example recipe on any provider or parse failure."""
        mode = PromptMode.STRUCTURED_RECIPE
        result = self._filter(ingredients, profile)
        if result.all_blocked:
            return self._blocked(result), result

        prompt = compose(profile, result.safe, result.blocked, mode)
        return self._structured(prompt, mode), result

    def recipe_of_the_day(
        self,
        profile: UserProfile,
        user_name: str,
        detailed: bool = False,
        ingredients: Optional[List[str]] = None
    ) -> Tuple[StructuredOutcome, FilterResult]:
        """Daily suggestion for the user; pantry ingredients are optional here."""
        mode = PromptMode.RECIPE_OF_THE_DAY
        result = FilterResult()
        if ingredients:
            result = self._filter(ingredients, profile)
            if result.all_blocked:
                return self._blocked(result), result

        prompt = compose(profile, result.safe, result.blocked, mode, user_name=user_name, detailed=detailed)
        return self._structured(prompt, mode, detailed), result

    def suggest_substitutes(self, ingredient: str, profile: UserProfile) -> Tuple[Union[Parsed, Fallback], FilterResult]:
        """Exactly five substitutes for one ingredient."""
        mode = PromptMode.SUBSTITUTE_LIST
        ingredient = (ingredient or "").strip()
        if not ingredient:
            raise InputError("Please name an ingredient to substitute", "ingredient")
        if len(ingredient) > MAX_INGREDIENT_LENGTH:
            raise ValidationError(
                f"Ingredient names must be at most {MAX_INGREDIENT_LENGTH} characters",
                "ingredient"
            )

        # The ingredient itself may be blocked; that is usually why a swap is wanted
        result = filter_ingredients([ingredient], profile.dietary_restrictions)
        prompt = compose(profile, [], result.blocked, mode, ingredient=ingredient)
        outcome = self._structured(prompt, mode)
        if outcome.is_fallback:
            outcome.value.ingredient = ingredient
        return outcome, result

    def analyze_menu(self, menu_text: str, profile: UserProfile) -> Union[Parsed, Fallback]:
        """Classify every dish on a menu as safe, caution or avoid for this user."""
        mode = PromptMode.MENU_ANALYSIS
        menu_text = (menu_text or "").strip()
        if not menu_text:
            raise InputError("Please provide the menu text to analyze", "menuText")
        if len(menu_text) > MAX_MENU_LENGTH:
            raise ValidationError(f"menuText must be at most {MAX_MENU_LENGTH} characters", "menuText")

        prompt = compose(profile, [], [], mode, menu_text=menu_text)
        return self._structured(prompt, mode)
