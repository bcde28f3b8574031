"""Credit packages sold through checkout."""

from dataclasses import asdict, dataclass
from typing import Optional

from hairsim.services.exceptions import InvalidPackageError


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price_cents: int
    currency: str = "usd"
    savings: Optional[str] = None
    popular: bool = False
    best_value: bool = False

    @property
    def price_per_credit(self) -> float:
        return round(self.price_cents / 100 / self.credits, 2)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["price"] = self.price_cents / 100
        data["pricePerCredit"] = self.price_per_credit
        return data


CREDIT_PACKAGES: dict[str, CreditPackage] = {
    "starter": CreditPackage(id="starter", name="Starter Pack", credits=10, price_cents=199),
    "popular": CreditPackage(
        id="popular",
        name="Popular Pack",
        credits=30,
        price_cents=499,
        savings="15% OFF",
        popular=True,
    ),
    "pro": CreditPackage(
        id="pro", name="Pro Pack", credits=75, price_cents=999, savings="35% OFF"
    ),
    "mega": CreditPackage(
        id="mega",
        name="Mega Pack",
        credits=200,
        price_cents=1999,
        savings="50% OFF",
        best_value=True,
    ),
}


def get_package(package_id: str) -> CreditPackage:
    """Look up a credit package.

    Raises:
        InvalidPackageError: If package_id is unknown
    """
    package = CREDIT_PACKAGES.get((package_id or "").strip().lower())
    if package is None:
        raise InvalidPackageError("Invalid package ID", packageId=package_id)
    return package
