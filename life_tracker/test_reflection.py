import unittest
from unittest import mock

from life_tracker import reflection
from life_tracker.database_manager import (
    get_journal_entry,
    insert_journal_entry,
    update_journal_entry,
    upsert_user_profile,
)
from life_tracker.errors import LLMError, ValidationError
from life_tracker.llm_manager import LLMResponse
from life_tracker.reflection import (
    analyze_meal,
    build_nutrition_system_prompt,
    build_reflection_prompt,
    extract_nutritional_estimates,
    reflect_on_entry,
    summarize_meal_patterns,
)
from life_tracker.testing import TempDatabaseTestCase
from life_tracker.usage_tracker import get_user_usage_stats


def fake_response(text):
    return LLMResponse(content=text, model='gpt-4.1-mini',
                       usage={'prompt_tokens': 80, 'completion_tokens': 40, 'total_tokens': 120})


class TestPrompts(unittest.TestCase):
    def test_reflection_prompt(self):
        prompt = build_reflection_prompt(
            'Climbed after work and felt strong.',
            {'Stretch': True, 'Read': False},
            'good', '2024-05-01',
            {'dayRating': 4, 'climbed': True, 'miles': 2}
        )
        self.assertIn('Journal Entry (2024-05-01):\n"Climbed after work and felt strong."', prompt)
        self.assertIn('- Stretch: Completed', prompt)
        self.assertIn('- Read: Not completed', prompt)
        self.assertIn('- Day Rating: 4/5', prompt)
        self.assertIn('- Climbed: Yes', prompt)

    def test_reflection_prompt_without_habits(self):
        prompt = build_reflection_prompt('Quiet day.', {}, 'neutral', '2024-05-01', {})
        self.assertIn('- None tracked', prompt)
        self.assertIn('- Climbed: No', prompt)

    def test_nutrition_system_prompt(self):
        self.assertIn('Dietary preferences: None specified', build_nutrition_system_prompt(None))
        prompt = build_nutrition_system_prompt({
            'dietary_preferences': ['vegetarian', 'low sugar'], 'health_goals': 'More protein',
        })
        self.assertIn('Dietary preferences: vegetarian, low sugar', prompt)
        self.assertIn('Health goals: More protein', prompt)

    def test_meal_patterns(self):
        self.assertEqual(summarize_meal_patterns([]), 'No recent meal data available')
        entries = [{'meals': 'Oats and berries'}, {'meals': None}, {'meals': 'x' * 80}, {'meals': 'Soup'}]
        self.assertEqual(summarize_meal_patterns(entries),
                         f"Recent meals include: Oats and berries..., {'x' * 50}...")

    def test_nutritional_estimates(self):
        text = 'Roughly 650 calories with 35g protein, 70 grams carbs and 20g fat.'
        self.assertEqual(extract_nutritional_estimates(text),
                         {'calories': 650, 'protein': 35, 'carbs': 70, 'fat': 20})
        self.assertEqual(extract_nutritional_estimates('Looks balanced.'),
                         {'calories': None, 'protein': None, 'carbs': None, 'fat': None})


class TestReflectOnEntry(TempDatabaseTestCase):
    def test_empty_entry(self):
        with self.assertRaises(ValidationError):
            reflect_on_entry('   ', user_id=self.user_id)

    def test_generates_saves_and_caches(self):
        entry_id = insert_journal_entry(self.user_id, '2024-05-01', 'Long run by the river.')

        with mock.patch.object(reflection, 'query_llm', return_value=fake_response('You kept moving.')) as query:
            text = reflect_on_entry('Long run by the river.', mood='good', entry_date='2024-05-01',
                                    user_id=self.user_id, entry_id=entry_id)
        self.assertEqual(text, 'You kept moving.')
        self.assertEqual(query.call_args.kwargs['max_tokens'], 300)
        self.assertEqual(get_journal_entry(entry_id)['ai_reflection'], 'You kept moving.')

        with mock.patch.object(reflection, 'query_llm') as second:
            again = reflect_on_entry('Long run by the river.', mood='good', entry_date='2024-05-01',
                                     user_id=self.user_id)
        second.assert_not_called()
        self.assertEqual(again, 'You kept moving.')

        stats = get_user_usage_stats(self.user_id)
        self.assertEqual(stats[0]['function_name'], 'journal-reflect')
        self.assertEqual(stats[0]['calls'], 1)
        self.assertEqual(stats[0]['total_tokens'], 120)

    def test_cache_can_be_bypassed(self):
        with mock.patch.object(reflection, 'query_llm', return_value=fake_response('First.')):
            reflect_on_entry('Same words.', user_id=self.user_id)
        with mock.patch.object(reflection, 'query_llm', return_value=fake_response('Second.')):
            self.assertEqual(reflect_on_entry('Same words.', user_id=self.user_id, use_cache=False), 'Second.')

    def test_llm_failure(self):
        with mock.patch.object(reflection, 'query_llm', side_effect=LLMError('Empty response from LLM')):
            with self.assertRaises(LLMError) as ctx:
                reflect_on_entry('Something happened.', user_id=self.user_id)
        self.assertEqual(str(ctx.exception), 'No reflection generated')
        self.assertEqual(get_user_usage_stats(self.user_id)[0]['errors'], 1)


class TestAnalyzeMeal(TempDatabaseTestCase):
    def test_empty_meals(self):
        with self.assertRaises(ValidationError):
            analyze_meal('', '2024-05-01', user_id=self.user_id)

    def test_analysis_uses_profile_and_history(self):
        upsert_user_profile(self.user_id, health_goals='Build muscle', dietary_preferences=['pescatarian'])
        earlier = insert_journal_entry(self.user_id, '2024-04-30', 'Busy day.')
        update_journal_entry(earlier, meals='Salmon, rice and greens')

        with mock.patch.object(reflection, 'query_llm',
                               return_value=fake_response('About 700 calories and 40g protein.')) as query:
            result = analyze_meal('Eggs on toast, tuna salad', '2024-05-01', {'climbed': True},
                                  user_id=self.user_id)

        self.assertEqual(result['analysis'], 'About 700 calories and 40g protein.')
        self.assertEqual(result['nutritionalEstimates'],
                         {'calories': 700, 'protein': 40, 'carbs': None, 'fat': None})

        prompt = query.call_args[0][0]
        self.assertIn('Recent meals include: Salmon, rice and greens...', prompt)
        self.assertIn('Physical Activity: Climbed today', prompt)
        system_prompt = query.call_args.kwargs['system_prompt']
        self.assertIn('pescatarian', system_prompt)
        self.assertIn('Build muscle', system_prompt)
        self.assertEqual(query.call_args.kwargs['max_tokens'], 500)

    def test_llm_failure(self):
        with mock.patch.object(reflection, 'query_llm', side_effect=LLMError('openai API error: down')):
            with self.assertRaises(LLMError) as ctx:
                analyze_meal('Pasta', '2024-05-01', user_id=self.user_id)
        self.assertEqual(str(ctx.exception), 'Failed to generate meal analysis')


if __name__ == '__main__':
    unittest.main()
