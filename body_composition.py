# body_composition.py
# =============================================================================
# BMI and a rough muscle-mass estimate from body weight and height.
# =============================================================================

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

# Used when no measured muscle mass is supplied.
MUSCLE_MASS_RATIO = 0.4


class BodyComposition(BaseModel):
    bmi: float
    category: str
    muscle_mass_kg: float
    muscle_mass_estimated: bool


def calculate_bmi(weight_kg: float, height_cm: float) -> float:
    if weight_kg <= 0 or height_cm <= 0:
        raise ValueError("weight and height must be positive")
    height_m = height_cm / 100
    return round(weight_kg / (height_m * height_m), 2)


def bmi_category(bmi: float) -> str:
    if bmi < 18.5:
        return "Underweight"
    if bmi < 24.9:
        return "Normal weight"
    if bmi < 29.9:
        return "Overweight"
    return "Obesity"


def estimate_muscle_mass(weight_kg: float) -> float:
    return round(weight_kg * MUSCLE_MASS_RATIO, 2)


def analyze(
    weight_kg: float, height_cm: float, muscle_mass_kg: Optional[float] = None
) -> BodyComposition:
    """Compute BMI, its category and muscle mass (measured if given, else estimated)."""
    bmi = calculate_bmi(weight_kg, height_cm)
    estimated = not muscle_mass_kg
    return BodyComposition(
        bmi=bmi,
        category=bmi_category(bmi),
        muscle_mass_kg=estimate_muscle_mass(weight_kg) if estimated else muscle_mass_kg,
        muscle_mass_estimated=estimated,
    )
