"""NutriConnect - smart school meals & subsidy platform."""

__version__ = "1.0.0"
