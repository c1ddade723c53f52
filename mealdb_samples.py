"""
Sample TheMealDB meal objects for the test suite.
"""


def make_meal(meal_id, title, ingredients, category="Chicken", area="British"):
    meal = {
        "idMeal": str(meal_id),
        "strMeal": title,
        "strMealThumb": f"https://img.example/{meal_id}.jpg",
        "strInstructions": f"Cook {title.lower()} slowly. " * 10,
        "strCategory": category,
        "strArea": area,
    }
    for slot in range(1, 21):
        meal[f"strIngredient{slot}"] = ingredients[slot - 1].title() if slot <= len(ingredients) else ""
    return meal
