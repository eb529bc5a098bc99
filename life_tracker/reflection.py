import re
import time
import logging
from typing import Dict, Optional, Any, List

from . import config
from .cache_manager import ResponseCache
from .database_manager import get_recent_meal_entries, get_user_profile, update_journal_entry
from .errors import LLMError, ValidationError
from .llm_manager import query_llm, get_active_model
from .usage_tracker import track_function_call

REFLECTION_SYSTEM_PROMPT = (
    "You are a compassionate therapeutic AI assistant that provides thoughtful, supportive "
    "reflections on journal entries. Your responses should be warm, insightful, and encouraging "
    "while maintaining appropriate boundaries."
)

_cache = ResponseCache()


def build_reflection_prompt(entry: str, habits: Dict[str, bool], mood: str, entry_date: str,
                            context: Dict[str, Any]) -> str:
    habit_lines = "\n".join(
        f"- {habit}: {'Completed' if completed else 'Not completed'}"
        for habit, completed in habits.items()
    ) or "- None tracked"

    return f"""As a therapeutic AI assistant, provide a thoughtful reflection on this journal entry. Focus on patterns, insights, and gentle guidance.

Journal Entry ({entry_date}):
"{entry}"

Additional Context:
- Mood: {mood}
- Day Rating: {context.get('dayRating')}/5
- Wake Time: {context.get('wakeTime')}
- Sleep Time: {context.get('sleepTime')}
- Miles: {context.get('miles')}
- Climbed: {'Yes' if context.get('climbed') else 'No'}

Daily Habits:
{habit_lines}

Please provide:
1. A brief reflection on the emotional tone and themes
2. Observations about patterns or habits
3. Gentle, supportive insights or suggestions
4. Encouragement for continued growth

Keep the response warm, supportive, and under 200 words."""


def reflect_on_entry(
    entry: str,
    habits: Optional[Dict[str, bool]] = None,
    mood: str = 'neutral',
    entry_date: str = '',
    context: Optional[Dict[str, Any]] = None,
    user_id: str = config.USER_ID,
    entry_id: Optional[str] = None,
    use_cache: bool = True
) -> str:
    """
    Therapeutic reflection on a single journal entry.

    When entry_id is given the reflection is also saved on that entry.

    Raises:
        ValidationError: empty entry text
        LLMError: no reflection came back
    """
    if not entry or not entry.strip():
        raise ValidationError('Journal entry text is required')

    habits = habits or {}
    context = context or {}
    params = {'entry': entry, 'habits': habits, 'mood': mood, 'date': entry_date, 'context': context}

    reflection = _cache.get('journal-reflect', params, user_id) if use_cache else None
    if reflection is None:
        logging.info(f"Generating reflection for entry dated {entry_date or 'unknown'}")
        start = time.monotonic()
        model = get_active_model()
        try:
            response = query_llm(
                build_reflection_prompt(entry, habits, mood, entry_date, context),
                system_prompt=REFLECTION_SYSTEM_PROMPT,
                temperature=0.7,
                max_tokens=300
            )
        except LLMError as e:
            track_function_call('journal-reflect', user_id, model, start,
                                status='error', error_message=str(e))
            raise LLMError('No reflection generated') from e

        reflection = response.content
        track_function_call('journal-reflect', user_id, response.model, start, usage=response.usage)
        _cache.set('journal-reflect', params, reflection,
                   ttl_seconds=ResponseCache.get_ttl('journal-reflect'),
                   user_id=user_id, tokens_used=response.usage.get('total_tokens', 0))

    if entry_id and not update_journal_entry(entry_id, ai_reflection=reflection):
        logging.warning(f"Could not save reflection on entry {entry_id}")

    return reflection


# --- Meals ---

def build_nutrition_system_prompt(profile: Optional[Dict[str, Any]]) -> str:
    profile = profile or {}
    dietary_prefs = ", ".join(profile.get('dietary_preferences') or []) or 'None specified'
    health_goals = profile.get('health_goals') or 'General wellness'

    return f"""You are a supportive nutritional AI assistant providing meal analysis for someone with these preferences:
- Dietary preferences: {dietary_prefs}
- Health goals: {health_goals}

Provide constructive feedback that:
1. Acknowledges what they're doing well
2. Identifies nutritional balance (protein, carbs, fats, vegetables)
3. Suggests gentle improvements without judgment
4. Estimates approximate calories and macros when possible
5. Considers meal timing and portion awareness
6. Encourages sustainable, healthy eating habits

Keep the tone warm, encouraging, and practical. Focus on progress, not perfection."""


def summarize_meal_patterns(recent_entries: List[Dict[str, Any]]) -> str:
    """First three recent meal logs, each cut to 50 characters."""
    patterns = [f"{entry['meals'][:50]}..." for entry in recent_entries[:3] if entry.get('meals')]
    if not patterns:
        return 'No recent meal data available'
    return f"Recent meals include: {', '.join(patterns)}"


def build_meal_prompt(meals: str, meal_date: str, context: Dict[str, Any],
                      recent_entries: List[Dict[str, Any]]) -> str:
    return f"""Please analyze this meal log for {meal_date}:

Today's Meals:
"{meals}"

Context:
- Day Rating: {context.get('dayRating') or 'Not rated'}/5
- Physical Activity: {'Climbed today' if context.get('climbed') else 'No climbing'}
- Miles: {context.get('miles') or 0}

Recent Eating Patterns:
{summarize_meal_patterns(recent_entries)}

Provide a supportive analysis including:
1. Nutritional balance assessment
2. Estimated calories and macros (protein, carbs, fat)
3. What they're doing well
4. One or two gentle suggestions
5. Encouragement for tomorrow"""


NUTRITION_PATTERNS = {
    'calories': re.compile(r'(\d+)\s*calories', re.IGNORECASE),
    'protein': re.compile(r'(\d+)\s*g(?:rams)?\s*protein', re.IGNORECASE),
    'carbs': re.compile(r'(\d+)\s*g(?:rams)?\s*carb', re.IGNORECASE),
    'fat': re.compile(r'(\d+)\s*g(?:rams)?\s*fat', re.IGNORECASE),
}


def extract_nutritional_estimates(analysis: str) -> Dict[str, Optional[int]]:
    estimates = {}
    for name, pattern in NUTRITION_PATTERNS.items():
        match = pattern.search(analysis)
        estimates[name] = int(match.group(1)) if match else None
    return estimates


def analyze_meal(
    meals: str,
    meal_date: str,
    context: Optional[Dict[str, Any]] = None,
    user_id: str = config.USER_ID
) -> Dict[str, Any]:
    """
    Nutritional feedback on a day's meals.

    Returns a dict with the analysis text and the nutritional estimates
    found in it.
    """
    if not meals or not meals.strip():
        raise ValidationError('Meal description is required')

    context = context or {}
    recent_entries = get_recent_meal_entries(user_id, limit=7)
    profile = get_user_profile(user_id)

    system_prompt = build_nutrition_system_prompt(profile)
    prompt = build_meal_prompt(meals, meal_date, context, recent_entries)

    start = time.monotonic()
    model = get_active_model()
    try:
        response = query_llm(prompt, system_prompt=system_prompt, temperature=0.7, max_tokens=500)
    except LLMError as e:
        track_function_call('meal-analyze', user_id, model, start, status='error', error_message=str(e))
        raise LLMError('Failed to generate meal analysis') from e

    nutritional_data = extract_nutritional_estimates(response.content)
    track_function_call('meal-analyze', user_id, response.model, start, usage=response.usage,
                        metadata={'nutritionalData': nutritional_data})

    return {
        'analysis': response.content,
        'nutritionalEstimates': nutritional_data,
    }
