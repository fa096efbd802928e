"""
Unit tests for the HealthChef generation pipeline.
Covers profile defaulting, the ingredient safety filter, prompt composition,
response interpretation and the RecipeService orchestration.
"""

import copy
import json
from collections import Counter
from unittest.mock import MagicMock

import pytest

from app_models import (
    UserProfile, ProfileUpdate, IngredientRequest, PromptMode, ResponseShape,
    GenerationRequest, Parsed, Fallback, FreeTextRecipe, AllBlockedResult,
    InputError, ValidationError, ProviderError, StructuredRecipe,
)
from app_prompts import SUBSTITUTES_MARKER, compose
from app_services import (
    filter_ingredients, split_substitutes, interpret, fallback_for,
    GeminiService, RecipeService,
    FALLBACK_RECIPE, FALLBACK_SUGGESTION, FALLBACK_SUBSTITUTES, FALLBACK_MENU,
)


def available_section(prompt):
    """Text between the available-ingredients heading and the excluded heading."""
    start = prompt.index("AVAILABLE INGREDIENTS")
    end = prompt.index("EXCLUDED INGREDIENTS")
    return prompt[start:end]


def excluded_section(prompt):
    start = prompt.index("EXCLUDED INGREDIENTS")
    end = prompt.index("RESPONSE FORMAT", start)
    return prompt[start:end]


NUT_FREE = UserProfile.from_dict({"dietaryRestrictions": ["nut-free"]})


class TestUserProfile:
    """Profile reads must never fail on missing or odd fields."""

    def test_defaults_for_empty_profile(self):
        profile = UserProfile.from_dict({})
        assert profile.dietary_restrictions == ()
        assert profile.health_conditions == ()
        assert profile.spice_preference == "medium"
        assert profile.cuisine_types == ()
        assert profile.time_availability == "30-min"

    def test_none_profile(self):
        assert UserProfile.from_dict(None) == UserProfile()

    def test_unknown_enum_values_fall_back(self):
        profile = UserProfile.from_dict({"spicePreference": "volcanic", "timeAvailability": "2-days"})
        assert profile.spice_preference == "medium"
        assert profile.time_availability == "30-min"

    def test_tags_are_normalized_and_deduplicated(self):
        profile = UserProfile.from_dict({
            "dietaryRestrictions": ["Nut-Free", " dairy-free ", "nut-free", ""],
            "cuisineTypes": "italian, asian",
        })
        assert profile.dietary_restrictions == ("nut-free", "dairy-free")
        assert profile.cuisine_types == ("italian", "asian")

    def test_profile_update_rejects_bad_spice(self):
        with pytest.raises(ValidationError) as exc:
            ProfileUpdate.from_dict({"spicePreference": "volcanic"})
        assert exc.value.field == "spicePreference"

    def test_profile_update_requires_arrays(self):
        with pytest.raises(ValidationError):
            ProfileUpdate.from_dict({"dietaryRestrictions": "nut-free"})

    def test_profile_update_rejects_non_object(self):
        with pytest.raises(ValidationError):
            ProfileUpdate.from_dict(["mild"])

    def test_profile_update_keeps_only_given_fields(self):
        update = ProfileUpdate.from_dict({"timeAvailability": "15-min"})
        assert update == {"timeAvailability": "15-min"}


class TestIngredientRequest:

    def test_missing_ingredients(self):
        with pytest.raises(InputError):
            IngredientRequest.from_dict({})

    def test_blank_entries_only(self):
        with pytest.raises(InputError):
            IngredientRequest.from_dict({"ingredients": ["", "   "]})

    def test_not_a_list(self):
        with pytest.raises(ValidationError):
            IngredientRequest.from_dict({"ingredients": "rice"})

    def test_body_must_be_object(self):
        with pytest.raises(ValidationError) as exc:
            IngredientRequest.from_dict(["Rice"])
        assert not isinstance(exc.value, InputError)

    def test_strips_and_keeps_duplicates(self):
        req = IngredientRequest.from_dict({"ingredients": [" Rice ", "Rice", "Egg"]})
        assert req.ingredients == ["Rice", "Rice", "Egg"]


class TestSafetyFilter:

    def test_peanut_butter_blocked_by_nut_free(self):
        result = filter_ingredients(["Peanut Butter"], {"nut-free"})
        assert result.safe == []
        assert result.blocked == ["Peanut Butter"]

    def test_milk_blocked_by_dairy_free(self):
        result = filter_ingredients(["Rice", "Milk"], {"dairy-free"})
        assert result.safe == ["Rice"]
        assert result.blocked == ["Milk"]

    def test_blocked_once_when_matching_several_restrictions(self):
        result = filter_ingredients(["Almond Flour"], {"nut-free", "gluten-free"})
        assert result.blocked == ["Almond Flour"]
        assert result.blocked_by == ["nut-free"]

    def test_first_matching_restriction_wins(self):
        result = filter_ingredients(["Wheat Bread"], {"gluten-free", "dairy-free"})
        assert result.blocked == ["Wheat Bread"]
        assert result.blocked_by == ["gluten-free"]

    def test_unknown_restrictions_pass_through(self):
        result = filter_ingredients(["Chicken", "Milk"], {"vegan", "keto"})
        assert result.safe == ["Chicken", "Milk"]
        assert result.blocked == []

    def test_restriction_tags_are_case_insensitive(self):
        result = filter_ingredients(["Cheddar Cheese"], ["Dairy-Free"])
        assert result.blocked == ["Cheddar Cheese"]

    def test_empty_input(self):
        result = filter_ingredients([], {"nut-free"})
        assert result.safe == []
        assert result.blocked == []
        assert not result.all_blocked

    def test_order_and_duplicates_preserved(self):
        ingredients = ["Rice", "Peanut", "Egg", "Rice", "Walnut"]
        result = filter_ingredients(ingredients, {"nut-free"})
        assert result.safe == ["Rice", "Egg", "Rice"]
        assert result.blocked == ["Peanut", "Walnut"]

    @pytest.mark.parametrize("ingredients,restrictions", [
        (["Peanut", "Chicken", "Rice"], {"nut-free"}),
        (["Milk", "Butter", "Bread", "Apple", "Milk"], {"dairy-free", "gluten-free"}),
        (["Tofu", "Pasta", "Almond", "yogurt"], {"nut-free", "dairy-free", "gluten-free"}),
        (["Tofu"], set()),
    ])
    def test_partition_is_exact(self, ingredients, restrictions):
        result = filter_ingredients(ingredients, restrictions)
        assert Counter(result.safe) + Counter(result.blocked) == Counter(ingredients)
        assert not set(result.safe) & set(result.blocked)
        assert len(result.blocked_by) == len(result.blocked)

    def test_idempotent(self):
        args = (["Peanut", "Milk", "Rice"], {"nut-free", "dairy-free"})
        assert filter_ingredients(*args) == filter_ingredients(*args)


class TestPromptComposer:

    @pytest.mark.parametrize("mode", list(PromptMode))
    def test_deterministic(self, mode):
        profile = UserProfile.from_dict({
            "dietaryRestrictions": ["nut-free", "keto"],
            "healthConditions": ["diabetes", "hypertension"],
            "cuisineTypes": ["italian", "indian"],
        })
        kwargs = {"user_name": "Asha", "ingredient": "Butter", "menu_text": "Dal Tadka"}
        first = compose(profile, ["Chicken", "Rice"], ["Peanut"], mode, **kwargs)
        second = compose(profile, ["Chicken", "Rice"], ["Peanut"], mode, **kwargs)
        assert first == second

    @pytest.mark.parametrize("mode", list(PromptMode))
    def test_empty_profile_renders_fallback_text(self, mode):
        prompt = compose(UserProfile(), ["Rice"], [], mode, ingredient="Rice", menu_text="Soup")
        assert "Preferred cuisines: Any" in prompt
        assert "Dietary restrictions: None" in prompt
        assert "Health conditions: None" in prompt
        assert "[]" not in prompt

    def test_none_health_condition_renders_as_none(self):
        profile = UserProfile.from_dict({"healthConditions": ["none"]})
        prompt = compose(profile, ["Rice"], [], PromptMode.FREE_TEXT_RECIPE)
        assert "Health conditions: None" in prompt

    def test_empty_blocked_list_renders_none(self):
        prompt = compose(UserProfile(), ["Rice"], [], PromptMode.STRUCTURED_RECIPE)
        assert "- None" in excluded_section(prompt)

    def test_blocked_ingredient_listed_as_excluded_only(self):
        prompt = compose(NUT_FREE, ["Chicken", "Rice"], ["Peanut"], PromptMode.FREE_TEXT_RECIPE)
        assert "Peanut" not in available_section(prompt)
        assert "- Chicken" in available_section(prompt)
        assert "- Peanut" in excluded_section(prompt)
        assert "Use ONLY the ingredients in this list" in prompt

    def test_free_text_shape(self):
        prompt = compose(UserProfile(), ["Rice"], [], PromptMode.FREE_TEXT_RECIPE)
        assert SUBSTITUTES_MARKER in prompt
        assert "plain text" in prompt
        assert "JSON" not in prompt

    def test_structured_shape(self):
        prompt = compose(UserProfile(), ["Rice"], [], PromptMode.STRUCTURED_RECIPE)
        assert "single valid JSON object" in prompt
        for key in ("prepTime", "cookTime", "steps", "nutrition", "substitutes"):
            assert f'"{key}"' in prompt
        assert "plain text" not in prompt

    def test_health_rules(self):
        profile = UserProfile.from_dict({
            "dietaryRestrictions": ["keto"],
            "healthConditions": ["diabetes", "hypertension"],
        })
        prompt = compose(profile, ["Rice"], [], PromptMode.STRUCTURED_RECIPE)
        assert "added sugar" in prompt
        assert "sodium low" in prompt
        assert "net carbohydrates very low" in prompt

    def test_recipe_of_the_day_light_and_detailed(self):
        light = compose(UserProfile(), [], [], PromptMode.RECIPE_OF_THE_DAY, user_name="Asha")
        full = compose(UserProfile(), [], [], PromptMode.RECIPE_OF_THE_DAY, user_name="Asha", detailed=True)
        assert "Asha" in light
        assert '"healthBenefit"' in light
        assert '"steps"' not in light
        assert '"steps"' in full
        assert "No pantry was provided" in light

    def test_substitute_list(self):
        prompt = compose(NUT_FREE, [], ["Peanut Butter"], PromptMode.SUBSTITUTE_LIST, ingredient="Peanut Butter")
        assert "exactly 5" in prompt
        assert "Peanut Butter" in excluded_section(prompt)

    def test_menu_analysis(self):
        prompt = compose(NUT_FREE, [], [], PromptMode.MENU_ANALYSIS, menu_text="Palak Paneer - spinach curry")
        assert "Palak Paneer - spinach curry" in prompt
        assert "safe | caution | avoid" in prompt


class TestResponseInterpreter:

    def test_invalid_json_falls_back(self):
        result = interpret("not json", PromptMode.STRUCTURED_RECIPE)
        assert isinstance(result, Fallback)
        assert result.is_fallback
        assert result.reason == "invalid_json"
        assert result.value.title == FALLBACK_RECIPE["title"]

    def test_none_falls_back(self):
        assert isinstance(interpret(None, PromptMode.MENU_ANALYSIS), Fallback)

    def test_valid_recipe_parses(self):
        payload = copy.deepcopy(FALLBACK_RECIPE)
        payload["title"] = "Chicken Rice Bowl"
        result = interpret(json.dumps(payload), PromptMode.STRUCTURED_RECIPE)
        assert isinstance(result, Parsed)
        assert not result.is_fallback
        assert isinstance(result.value, StructuredRecipe)
        assert result.value.title == "Chicken Rice Bowl"
        assert result.value.steps[0].step == 1

    def test_json_inside_code_fence(self):
        payload = copy.deepcopy(FALLBACK_SUGGESTION)
        payload["title"] = "Lemon Lentil Soup"
        raw = "```json\n" + json.dumps(payload) + "\n```"
        result = interpret(raw, PromptMode.RECIPE_OF_THE_DAY)
        assert isinstance(result, Parsed)
        assert result.value.title == "Lemon Lentil Soup"

    def test_deeply_nested_json_falls_back(self):
        raw = "[" * 200000 + "]" * 200000
        result = interpret(raw, PromptMode.MENU_ANALYSIS)
        assert isinstance(result, Fallback)
        assert result.reason == "invalid_json"

    def test_non_finite_step_number_uses_position(self):
        payload = copy.deepcopy(FALLBACK_RECIPE)
        payload["title"] = "Chicken Rice Bowl"
        raw = json.dumps(payload).replace('"step": 1,', '"step": 1e999,')
        result = interpret(raw, PromptMode.STRUCTURED_RECIPE)
        assert isinstance(result, Parsed)
        assert result.value.title == "Chicken Rice Bowl"
        assert result.value.steps[0].step == 1

    def test_missing_key_falls_back(self):
        payload = copy.deepcopy(FALLBACK_RECIPE)
        del payload["steps"]
        result = interpret(json.dumps(payload), PromptMode.STRUCTURED_RECIPE)
        assert isinstance(result, Fallback)
        assert result.reason == "schema_mismatch"

    def test_substitutes_must_be_exactly_five(self):
        payload = copy.deepcopy(FALLBACK_SUBSTITUTES)
        payload["substitutes"] = payload["substitutes"][:4]
        result = interpret(json.dumps(payload), PromptMode.SUBSTITUTE_LIST)
        assert isinstance(result, Fallback)

    def test_menu_rejects_unknown_classification(self):
        payload = copy.deepcopy(FALLBACK_MENU)
        payload["dishes"][0]["classification"] = "recommended"
        result = interpret(json.dumps(payload), PromptMode.MENU_ANALYSIS)
        assert isinstance(result, Fallback)

    def test_menu_summary_counts(self):
        result = interpret(json.dumps(FALLBACK_MENU), PromptMode.MENU_ANALYSIS)
        assert isinstance(result, Parsed)
        assert result.value.to_dict()["summary"] == {"safe": 3, "caution": 1, "avoid": 0}

    def test_detailed_recipe_of_the_day_uses_full_schema(self):
        result = interpret(json.dumps(FALLBACK_SUGGESTION), PromptMode.RECIPE_OF_THE_DAY, detailed=True)
        assert isinstance(result, Fallback)
        assert isinstance(result.value, StructuredRecipe)

    def test_fallback_payloads_are_valid(self):
        for mode in (PromptMode.STRUCTURED_RECIPE, PromptMode.RECIPE_OF_THE_DAY,
                     PromptMode.SUBSTITUTE_LIST, PromptMode.MENU_ANALYSIS):
            assert fallback_for(mode, "test").value.to_dict()

    def test_free_text_split(self):
        raw = "Title\n...⭐ Ingredient Substitutes\nSub list"
        result = interpret(raw, PromptMode.FREE_TEXT_RECIPE)
        assert isinstance(result, FreeTextRecipe)
        assert result.body == "Title\n..."
        assert result.substitutes == "⭐ Ingredient Substitutes\nSub list"

    def test_free_text_without_marker(self):
        raw = "Title\nJust a recipe"
        result = split_substitutes(raw)
        assert result.body == raw
        assert result.substitutes == ""

    def test_split_is_case_sensitive(self):
        raw = "Title\n⭐ ingredient substitutes\nSub list"
        assert split_substitutes(raw).substitutes == ""

    def test_split_on_first_occurrence(self):
        raw = f"Body\n{SUBSTITUTES_MARKER}\nA\n{SUBSTITUTES_MARKER}\nB"
        result = split_substitutes(raw)
        assert result.body == "Body"
        assert result.substitutes.count(SUBSTITUTES_MARKER) == 2


class TestRecipeService:

    def test_blocked_ingredient_never_offered(self, fake_generator):
        fake_generator.response = f"Chicken Rice\nCook it.\n{SUBSTITUTES_MARKER}\nUse quinoa"
        service = RecipeService(fake_generator)

        outcome, result = service.generate_recipe_text(["Peanut", "Chicken", "Rice"], NUT_FREE)

        assert result.safe == ["Chicken", "Rice"]
        assert result.blocked == ["Peanut"]
        assert len(fake_generator.calls) == 1
        request = fake_generator.calls[0]
        assert request.response_shape is ResponseShape.FREE_TEXT
        assert "Peanut" not in available_section(request.prompt)
        assert "- Peanut" in excluded_section(request.prompt)
        assert outcome.body == "Chicken Rice\nCook it."
        assert outcome.substitutes.startswith(SUBSTITUTES_MARKER)

    def test_all_blocked_skips_generation(self, fake_generator):
        service = RecipeService(fake_generator)
        outcome, result = service.generate_recipe_text(["Peanut Butter", "Almonds"], NUT_FREE)
        assert isinstance(outcome, AllBlockedResult)
        assert outcome.blocked == ["Peanut Butter", "Almonds"]
        assert "Peanut Butter" in outcome.message
        assert len(fake_generator.calls) == 0

    def test_all_blocked_structured(self, fake_generator):
        service = RecipeService(fake_generator)
        outcome, _ = service.generate_structured_recipe(["Walnut"], NUT_FREE)
        assert isinstance(outcome, AllBlockedResult)
        assert len(fake_generator.calls) == 0

    def test_empty_ingredients_is_input_error(self, fake_generator):
        service = RecipeService(fake_generator)
        with pytest.raises(InputError):
            service.generate_recipe_text([], NUT_FREE)
        assert len(fake_generator.calls) == 0

    def test_free_text_provider_error_propagates(self, fake_generator):
        fake_generator.error = ProviderError("timeout")
        service = RecipeService(fake_generator)
        with pytest.raises(ProviderError):
            service.generate_recipe_text(["Rice"], NUT_FREE)

    def test_structured_provider_error_falls_back(self, fake_generator):
        fake_generator.error = ProviderError("timeout")
        service = RecipeService(fake_generator)
        outcome, _ = service.generate_structured_recipe(["Rice"], NUT_FREE)
        assert isinstance(outcome, Fallback)
        assert outcome.reason == "provider_error"

    def test_structured_request_is_json(self, fake_generator):
        fake_generator.response = json.dumps(FALLBACK_RECIPE)
        service = RecipeService(fake_generator)
        outcome, _ = service.generate_structured_recipe(["Quinoa"], UserProfile())
        assert isinstance(outcome, Parsed)
        request = fake_generator.calls[0]
        assert request.response_shape is ResponseShape.JSON_OBJECT
        assert request.mode is PromptMode.STRUCTURED_RECIPE
        assert 0 <= request.temperature <= 1

    def test_substitutes_require_ingredient(self, fake_generator):
        service = RecipeService(fake_generator)
        with pytest.raises(InputError):
            service.suggest_substitutes("   ", NUT_FREE)
        assert len(fake_generator.calls) == 0

    def test_substitutes_fallback_names_requested_ingredient(self, fake_generator):
        fake_generator.response = "not json"
        service = RecipeService(fake_generator)
        outcome, _ = service.suggest_substitutes("Peanut Butter", NUT_FREE)
        assert isinstance(outcome, Fallback)
        assert outcome.value.ingredient == "Peanut Butter"
        assert FALLBACK_SUBSTITUTES["ingredient"] == "Butter"

    def test_substitutes_mark_blocked_ingredient(self, fake_generator):
        fake_generator.response = json.dumps(FALLBACK_SUBSTITUTES)
        service = RecipeService(fake_generator)
        outcome, result = service.suggest_substitutes("Peanut Butter", NUT_FREE)
        assert isinstance(outcome, Parsed)
        assert result.blocked == ["Peanut Butter"]
        assert "- Peanut Butter" in excluded_section(fake_generator.calls[0].prompt)

    def test_menu_requires_text(self, fake_generator):
        service = RecipeService(fake_generator)
        with pytest.raises(InputError):
            service.analyze_menu("", NUT_FREE)
        assert len(fake_generator.calls) == 0

    def test_recipe_of_the_day_without_pantry(self, fake_generator):
        fake_generator.response = json.dumps(FALLBACK_SUGGESTION)
        service = RecipeService(fake_generator)
        outcome, result = service.recipe_of_the_day(NUT_FREE, "Asha")
        assert isinstance(outcome, Parsed)
        assert result.safe == [] and result.blocked == []
        assert "Asha" in fake_generator.calls[0].prompt


class TestGeminiService:

    def _request(self):
        return GenerationRequest(
            prompt="hello",
            response_shape=ResponseShape.JSON_OBJECT,
            temperature=0.5,
            mode=PromptMode.STRUCTURED_RECIPE,
        )

    def test_missing_api_key(self):
        service = GeminiService(None)
        with pytest.raises(ProviderError):
            service.generate(self._request())

    def test_sdk_error_becomes_provider_error(self):
        service = GeminiService("key")
        service._client = MagicMock()
        service._client.models.generate_content.side_effect = TimeoutError("read timed out")
        with pytest.raises(ProviderError):
            service.generate(self._request())

    def test_empty_response_is_provider_error(self):
        service = GeminiService("key")
        service._client = MagicMock()
        service._client.models.generate_content.return_value = MagicMock(text="")
        with pytest.raises(ProviderError):
            service.generate(self._request())

    def test_returns_text(self):
        service = GeminiService("key", model="gemini-test")
        service._client = MagicMock()
        service._client.models.generate_content.return_value = MagicMock(text=' {"a": 1} ')
        assert service.generate(self._request()) == '{"a": 1}'
        kwargs = service._client.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "gemini-test"
        assert kwargs["config"].response_mime_type == "application/json"
        assert kwargs["config"].temperature == 0.5
