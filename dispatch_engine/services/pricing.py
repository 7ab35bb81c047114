"""
Fare calculation and the closed pricing-rule table.

Service types, vehicle classes and which driver vehicles may serve which
requested class are fixed enumerations; the rule table is validated against
them when it is built, never at request time.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from dispatch_engine.exceptions import UnsupportedVehicleClass
from dispatch_engine.schemas.schemas import ServiceTypeEnum, VehicleClassEnum

# ---------------------------------------------------------------------------
# Vehicle catalogue
# ---------------------------------------------------------------------------

SERVICE_VEHICLES: dict[ServiceTypeEnum, frozenset[VehicleClassEnum]] = {
    ServiceTypeEnum.taxi: frozenset({
        VehicleClassEnum.moto, VehicleClassEnum.eco, VehicleClassEnum.standard, VehicleClassEnum.premium,
    }),
    ServiceTypeEnum.delivery: frozenset({
        VehicleClassEnum.moto, VehicleClassEnum.standard, VehicleClassEnum.truck,
    }),
}

# requested class -> driver vehicle classes allowed to serve it
VEHICLE_COMPATIBILITY: dict[VehicleClassEnum, frozenset[VehicleClassEnum]] = {
    VehicleClassEnum.moto: frozenset({VehicleClassEnum.moto}),
    VehicleClassEnum.eco: frozenset({VehicleClassEnum.eco, VehicleClassEnum.standard}),
    VehicleClassEnum.standard: frozenset({VehicleClassEnum.standard, VehicleClassEnum.premium}),
    VehicleClassEnum.premium: frozenset({VehicleClassEnum.premium}),
    VehicleClassEnum.truck: frozenset({VehicleClassEnum.truck}),
}


def compatible_vehicle_classes(vehicle_class: VehicleClassEnum) -> frozenset[VehicleClassEnum]:
    return VEHICLE_COMPATIBILITY[vehicle_class]


def is_supported(service_type: ServiceTypeEnum, vehicle_class: VehicleClassEnum) -> bool:
    return vehicle_class in SERVICE_VEHICLES.get(service_type, frozenset())


# ---------------------------------------------------------------------------
# Pricing rules (CDF)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PricingRule:
    service_type: ServiceTypeEnum
    vehicle_class: VehicleClassEnum
    base_price: Decimal
    per_km_rate: Decimal
    # None = applies in every zone without a more specific rule
    zone_id: str | None = None


DEFAULT_RULES: tuple[PricingRule, ...] = (
    PricingRule(ServiceTypeEnum.taxi, VehicleClassEnum.moto, Decimal("1500"), Decimal("800")),
    PricingRule(ServiceTypeEnum.taxi, VehicleClassEnum.eco, Decimal("2500"), Decimal("1200")),
    PricingRule(ServiceTypeEnum.taxi, VehicleClassEnum.standard, Decimal("3000"), Decimal("1500")),
    PricingRule(ServiceTypeEnum.taxi, VehicleClassEnum.premium, Decimal("5000"), Decimal("2500")),
    PricingRule(ServiceTypeEnum.delivery, VehicleClassEnum.moto, Decimal("2000"), Decimal("1000")),
    PricingRule(ServiceTypeEnum.delivery, VehicleClassEnum.standard, Decimal("3500"), Decimal("1500")),
    PricingRule(ServiceTypeEnum.delivery, VehicleClassEnum.truck, Decimal("10000"), Decimal("4000")),
)


class PricingTable:
    def __init__(self, rules: tuple[PricingRule, ...] | list[PricingRule] = DEFAULT_RULES):
        self._rules: dict[tuple[str | None, ServiceTypeEnum, VehicleClassEnum], PricingRule] = {}
        for rule in rules:
            if not is_supported(rule.service_type, rule.vehicle_class):
                raise ValueError(
                    f"{rule.vehicle_class.value} is not offered for {rule.service_type.value}"
                )
            if rule.base_price < 0 or rule.per_km_rate < 0:
                raise ValueError(f"negative price in rule {rule}")
            key = (rule.zone_id, rule.service_type, rule.vehicle_class)
            if key in self._rules:
                raise ValueError(f"duplicate pricing rule {key}")
            self._rules[key] = rule

    def rule_for(
        self,
        service_type: ServiceTypeEnum,
        vehicle_class: VehicleClassEnum,
        zone_id: str | None = None,
    ) -> PricingRule:
        """Zone-specific rule first, then the zone-less default."""
        if not is_supported(service_type, vehicle_class):
            raise UnsupportedVehicleClass(
                f"{vehicle_class.value} is not offered for {service_type.value}"
            )
        rule = self._rules.get((zone_id, service_type, vehicle_class)) if zone_id else None
        rule = rule or self._rules.get((None, service_type, vehicle_class))
        if rule is None:
            raise UnsupportedVehicleClass(
                f"No pricing rule for {service_type.value}/{vehicle_class.value} in zone {zone_id}"
            )
        return rule


# ---------------------------------------------------------------------------
# Fare calculation
# ---------------------------------------------------------------------------

def to_money(value: Decimal | float | int) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def estimate_price(rule: PricingRule, distance_km: float) -> Decimal:
    """estimated = base + distance_km * per_km_rate"""
    return to_money(rule.base_price + Decimal(str(distance_km)) * rule.per_km_rate)


def apply_surge(estimated: Decimal, surge_multiplier: float) -> Decimal:
    return to_money(estimated * Decimal(str(surge_multiplier)))


def compensation_amount(price: Decimal, ratio: float) -> Decimal:
    return to_money(price * Decimal(str(ratio)))
