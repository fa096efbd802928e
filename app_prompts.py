"""
Prompt templates for HealthChef.

compose() renders one instruction document per PromptMode from the user's
profile and the filtered ingredient lists. Rendering is a pure function of
its inputs so identical requests always produce identical prompts.
"""

from typing import Dict, List, Optional, Sequence

from app_models import PromptMode, ResponseShape, UserProfile

# Heading the free-text recipe must end with; the response interpreter splits on it.
SUBSTITUTES_MARKER = "⭐ Ingredient Substitutes"

NONE_TEXT = "None"
ANY_TEXT = "Any"

DIETARY_RULES: Dict[str, str] = {
    "vegan": "Vegan: no meat, fish, eggs, dairy, honey or other animal products.",
    "vegetarian": "Vegetarian: no meat, poultry or fish.",
    "gluten-free": "Gluten-free: no wheat, barley, rye, regular flour, bread or pasta.",
    "keto": "Keto: keep net carbohydrates very low; no sugar, grains, rice, potatoes or bread.",
    "paleo": "Paleo: no grains, legumes, dairy or refined sugar.",
    "dairy-free": "Dairy-free: no milk, cheese, butter, yogurt or cream.",
    "nut-free": "Nut-free: no tree nuts, almonds, peanuts or nut-based oils and flours.",
    "halal": "Halal: no pork or alcohol; meat must be halal.",
    "kosher": "Kosher: no pork or shellfish and never mix meat with dairy.",
}

HEALTH_RULES: Dict[str, str] = {
    "diabetes": "Diabetes: keep added sugar and refined carbohydrates low; prefer high-fiber, low-glycemic ingredients.",
    "hypertension": "Hypertension: keep sodium low; no added salt beyond a pinch, avoid salty sauces and cured meats.",
    "heart-disease": "Heart disease: limit saturated fat and fried food; prefer lean proteins and unsaturated oils.",
    "food-allergies": "Food allergies: clearly call out common allergens (eggs, soy, shellfish, sesame) in the recipe.",
}

TIME_TEXT = {
    "15-min": "15 minutes",
    "30-min": "30 minutes",
    "45-min": "45 minutes",
    "60-min": "60 minutes",
    "60-plus": "more than 60 minutes",
}

TEMPERATURES = {
    PromptMode.FREE_TEXT_RECIPE: 0.7,
    PromptMode.STRUCTURED_RECIPE: 0.7,
    PromptMode.RECIPE_OF_THE_DAY: 0.9,
    PromptMode.SUBSTITUTE_LIST: 0.4,
    PromptMode.MENU_ANALYSIS: 0.2,
}

STRUCTURED_RECIPE_SCHEMA = """{
  "title": "Recipe name",
  "description": "One or two sentences about the dish",
  "difficulty": "easy | medium | hard",
  "prepTime": "10 minutes",
  "cookTime": "20 minutes",
  "totalTime": "30 minutes",
  "servings": 2,
  "ingredients": [
    {"name": "ingredient name", "amount": "1", "unit": "cup", "notes": "diced"}
  ],
  "steps": [
    {"step": 1, "instruction": "What to do", "duration": "5 minutes", "tip": "optional tip or null"}
  ],
  "nutrition": {"calories": "450 kcal", "protein": "30 g", "carbs": "40 g", "fat": "15 g"},
  "tips": ["short cooking or health tip"],
  "substitutes": {"ingredient used": "allowed replacement"}
}"""

SUGGESTION_SCHEMA = """{
  "title": "Recipe name",
  "description": "One or two sentences about the dish",
  "cookTime": "25 minutes",
  "difficulty": "easy | medium | hard",
  "tags": ["Vegan", "Heart Healthy"],
  "healthBenefit": "Why this suits the user's profile"
}"""

SUBSTITUTE_SCHEMA = """{
  "ingredient": "the ingredient being replaced",
  "substitutes": [
    {"name": "substitute", "reason": "why it works for this user", "ratio": "1:1"}
  ]
}"""

MENU_SCHEMA = """{
  "restaurant": "restaurant name if the menu states it, otherwise empty string",
  "dishes": [
    {
      "name": "dish name as printed",
      "classification": "safe | caution | avoid",
      "ingredients": ["likely ingredient"],
      "reason": "why it got this classification",
      "substitutions": ["change to ask the kitchen for"]
    }
  ],
  "recommendations": ["ordering advice for this user"]
}"""


def _join(items: Sequence[str], fallback: str) -> str:
    items = [i for i in items if i]
    return ", ".join(items) if items else fallback


def _bullets(items: Sequence[str], fallback: str = NONE_TEXT) -> str:
    items = [i for i in items if i]
    if not items:
        return f"- {fallback}"
    return "\n".join(f"- {i}" for i in items)


def _conditions(profile: UserProfile) -> List[str]:
    # "none" is a UI choice meaning no conditions, not a condition itself
    return [c for c in profile.health_conditions if c != "none"]


def _time_text(profile: UserProfile) -> str:
    return TIME_TEXT.get(profile.time_availability, TIME_TEXT["30-min"])


def render_profile(profile: UserProfile) -> str:
    return (
        "USER PROFILE\n"
        f"- Dietary restrictions: {_join(profile.dietary_restrictions, NONE_TEXT)}\n"
        f"- Health conditions: {_join(_conditions(profile), NONE_TEXT)}\n"
        f"- Spice preference: {profile.spice_preference}\n"
        f"- Preferred cuisines: {_join(profile.cuisine_types, ANY_TEXT)}\n"
        f"- Time available: {_time_text(profile)}"
    )


def render_rules(profile: UserProfile) -> str:
    """Advisory constraints for each restriction and condition the profile carries."""
    rules = [DIETARY_RULES[tag] for tag in profile.dietary_restrictions if tag in DIETARY_RULES]
    rules += [
        f"{tag}: respect this dietary restriction strictly."
        for tag in profile.dietary_restrictions
        if tag not in DIETARY_RULES
    ]
    rules += [HEALTH_RULES[c] for c in _conditions(profile) if c in HEALTH_RULES]
    rules += [
        f"{c}: choose ingredients and methods appropriate for this condition."
        for c in _conditions(profile)
        if c not in HEALTH_RULES
    ]
    rules.append(f"Match a {profile.spice_preference} spice level.")
    return "DIETARY AND HEALTH RULES (must all hold)\n" + _bullets(rules)


def render_available(safe: Sequence[str]) -> str:
    return (
        "AVAILABLE INGREDIENTS (closed set)\n"
        "Use ONLY the ingredients in this list. Do not introduce any ingredient that is not listed.\n"
        + _bullets(safe)
    )


def render_excluded(blocked: Sequence[str]) -> str:
    return (
        "EXCLUDED INGREDIENTS\n"
        "These were removed because they conflict with the user's restrictions. "
        "Never use them and never suggest them as substitutes.\n"
        + _bullets(blocked)
    )


def render_json_shape(schema: str, extra: str = "") -> str:
    return (
        "RESPONSE FORMAT\n"
        "Respond with a single valid JSON object and nothing else: no prose, no markdown, no code fences.\n"
        "Use exactly these fields:\n"
        f"{schema}"
        + (f"\n{extra}" if extra else "")
    )


def render_text_shape() -> str:
    return (
        "RESPONSE FORMAT\n"
        "Respond in plain text only, in this order:\n"
        "1. Recipe title on the first line\n"
        "2. A short description\n"
        "3. Ingredients with quantities\n"
        "4. Numbered cooking steps\n"
        f"5. Finish with a section whose heading line is exactly \"{SUBSTITUTES_MARKER}\", "
        "listing healthier or restriction-safe swaps for the ingredients you used. "
        "Write nothing after that section."
    )


def _free_text_recipe(profile, safe, blocked, **_) -> str:
    return "\n\n".join([
        "You are HealthChef, a chef and registered dietitian. Create ONE recipe for this user.",
        render_profile(profile),
        render_rules(profile),
        render_available(safe),
        render_excluded(blocked),
        f"The recipe must fit within {_time_text(profile)} of total time.",
        render_text_shape(),
    ])


def _structured_recipe(profile, safe, blocked, **_) -> str:
    return "\n\n".join([
        "You are HealthChef, a chef and registered dietitian. Create ONE complete recipe for this user.",
        render_profile(profile),
        render_rules(profile),
        render_available(safe),
        render_excluded(blocked),
        f"The recipe must fit within {_time_text(profile)} of total time.",
        render_json_shape(
            STRUCTURED_RECIPE_SCHEMA,
            "Number steps from 1. Every ingredient must come from AVAILABLE INGREDIENTS. "
            "Values in \"substitutes\" must not be EXCLUDED INGREDIENTS.",
        ),
    ])


def _recipe_of_the_day(profile, safe, blocked, user_name=None, detailed=False, **_) -> str:
    name = (user_name or "").strip() or "the user"
    sections = [
        f"You are HealthChef. Suggest today's recipe for {name}.",
        render_profile(profile),
        render_rules(profile),
    ]
    if safe:
        sections.append(render_available(safe))
    else:
        sections.append(
            "AVAILABLE INGREDIENTS\n"
            "No pantry was provided; choose common ingredients that satisfy every rule above."
        )
    sections.append(render_excluded(blocked))
    if detailed:
        sections.append(render_json_shape(STRUCTURED_RECIPE_SCHEMA, "Number steps from 1."))
    else:
        sections.append(render_json_shape(SUGGESTION_SCHEMA))
    return "\n\n".join(sections)


def _substitute_list(profile, safe, blocked, ingredient=None, **_) -> str:
    return "\n\n".join([
        f"You are HealthChef. Suggest exactly 5 substitutes for this ingredient: {ingredient}",
        render_profile(profile),
        render_rules(profile),
        render_excluded(blocked),
        render_json_shape(
            SUBSTITUTE_SCHEMA,
            f"\"ingredient\" must be \"{ingredient}\". \"substitutes\" must contain exactly 5 entries, "
            "each one allowed by every rule above.",
        ),
    ])


def _menu_analysis(profile, safe, blocked, menu_text=None, **_) -> str:
    return "\n\n".join([
        "You are HealthChef, a registered dietitian reviewing a restaurant menu for this user.",
        render_profile(profile),
        render_rules(profile),
        render_excluded(blocked),
        "MENU TEXT (verbatim, may contain OCR errors)\n\"\"\"\n" + (menu_text or "").strip() + "\n\"\"\"",
        "For every dish classify it as \"safe\" (fits every rule), \"caution\" (fits with changes) "
        "or \"avoid\" (conflicts with a rule), list its likely ingredients and suggest substitutions.",
        render_json_shape(MENU_SCHEMA, "\"classification\" must be one of: safe, caution, avoid."),
    ])


_TEMPLATES = {
    PromptMode.FREE_TEXT_RECIPE: _free_text_recipe,
    PromptMode.STRUCTURED_RECIPE: _structured_recipe,
    PromptMode.RECIPE_OF_THE_DAY: _recipe_of_the_day,
    PromptMode.SUBSTITUTE_LIST: _substitute_list,
    PromptMode.MENU_ANALYSIS: _menu_analysis,
}


def compose(
    profile: UserProfile,
    safe: Sequence[str],
    blocked: Sequence[str],
    mode: PromptMode,
    *,
    user_name: Optional[str] = None,
    detailed: bool = False,
    ingredient: Optional[str] = None,
    menu_text: Optional[str] = None,
) -> str:
    """
    Render the instruction document for one generation request.

    Args:
        profile: The requesting user's profile
        safe: Ingredients that passed the safety filter (closed set)
        blocked: Ingredients the safety filter removed
        mode: Which template and output shape to target
        user_name: Recipe-of-the-day greeting name
        detailed: Recipe-of-the-day returns a full recipe instead of a card
        ingredient: Ingredient to replace in substitute-list mode
        menu_text: Raw menu text in menu-analysis mode

    Returns:
        Prompt string
    """
    template = _TEMPLATES[PromptMode(mode)]
    return template(
        profile or UserProfile(),
        list(safe),
        list(blocked),
        user_name=user_name,
        detailed=detailed,
        ingredient=ingredient,
        menu_text=menu_text,
    )


def temperature_for(mode: PromptMode) -> float:
    return TEMPERATURES[PromptMode(mode)]


def response_shape_for(mode: PromptMode) -> ResponseShape:
    return PromptMode(mode).response_shape
