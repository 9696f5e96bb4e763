"""Prompt templates for meal plan generation."""

SYSTEM_PROMPT = (
    "You are a professional nutritionist. You answer with a single JSON object "
    "and nothing else: no explanations, no comments, no Markdown, no backticks."
)

MEAL_PLAN_PROMPT = """Create a {days}-day meal plan for an individual following a {diet_type} diet aiming for {calories} calories per day.

Allergies or restrictions: {allergies}
Preferred cuisine: {cuisine}
Snacks included: {snacks}

For each day, provide:
- Breakfast
- Lunch
- Dinner
{snacks_line}
Use simple ingredients and provide brief instructions. Include approximate calorie counts for each meal.

Return ONLY a valid JSON object formatted like this:
{{
    "Monday": {{
        "Breakfast": "Oatmeal with fruits - 350 calories",
        "Lunch": "Grilled chicken salad - 500 calories",
        "Dinner": "Steamed vegetables with quinoa - 600 calories",
        "Snacks": "Greek yogurt - 150 calories"
    }},
    "Tuesday": {{
        "Breakfast": "Smoothie bowl - 300 calories",
        "Lunch": "Turkey sandwich - 450 calories",
        "Dinner": "Baked salmon with asparagus - 700 calories",
        "Snacks": "Almonds - 200 calories"
    }}
}}"""


def build_meal_plan_prompt(*, diet_type: str, calories: int, allergies: str, cuisine: str, snacks: bool, days: int) -> str:
    return MEAL_PLAN_PROMPT.format(
        days=days,
        diet_type=diet_type,
        calories=calories,
        allergies=allergies or "none",
        cuisine=cuisine or "no preference",
        snacks="yes" if snacks else "no",
        snacks_line="- Snacks\n" if snacks else "",
    )
