from typing import NamedTuple

FUEL_PRICE_PER_LITER = 35  # CZK
AVG_CONSUMPTION_L_PER_100KM = 7
# Drivers share their savings: suggest 36% of the fuel cost
COST_SHARING_FACTOR = 0.36
MIN_PRICE_FACTOR = 0.5
MAX_PRICE_FACTOR = 2.0
MIN_PRICE = 20
CURRENCY = "CZK"


class PriceRange(NamedTuple):
    suggested: int
    min: int
    max: int


def suggest_price(distance_m: float) -> PriceRange:
    """
    Computes a suggested seat price from the route distance.
    Formula: (km / 100) * consumption * fuel price * sharing factor, floored at MIN_PRICE.
    """
    distance_km = max(0.0, distance_m) / 1000
    fuel_cost = (distance_km / 100) * AVG_CONSUMPTION_L_PER_100KM * FUEL_PRICE_PER_LITER
    suggested = max(MIN_PRICE, round(fuel_cost * COST_SHARING_FACTOR))

    return PriceRange(
        suggested=suggested,
        min=max(MIN_PRICE, round(suggested * MIN_PRICE_FACTOR)),
        max=round(suggested * MAX_PRICE_FACTOR),
    )
