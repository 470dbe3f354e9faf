"""Test data factories using factory-boy."""
from datetime import date

import factory

from pricetool.models.core import Code, Payer, Plan
from pricetool.models.database import Hospital


class CodeFactory(factory.alchemy.SQLAlchemyModelFactory):
    """Factory for Code model."""

    class Meta:
        model = Code
        sqlalchemy_session_persistence = "commit"
        abstract = False

    code = factory.Sequence(lambda n: f"{99000 + n}")
    code_type = factory.Iterator(["CPT", "HCPCS", "MS-DRG", "RC"])


class PayerFactory(factory.alchemy.SQLAlchemyModelFactory):
    """Factory for Payer model."""

    class Meta:
        model = Payer
        sqlalchemy_session_persistence = "commit"
        abstract = False

    name = factory.Sequence(lambda n: f"Payer {n}")


class PlanFactory(factory.alchemy.SQLAlchemyModelFactory):
    """Factory for Plan model."""

    class Meta:
        model = Plan
        sqlalchemy_session_persistence = "commit"
        abstract = False

    name = factory.Sequence(lambda n: f"Plan {n}")


class HospitalFactory(factory.alchemy.SQLAlchemyModelFactory):
    """Factory for Hospital model."""

    class Meta:
        model = Hospital
        sqlalchemy_session_persistence = "commit"
        abstract = False

    name = factory.Faker("company")
    addresses = factory.LazyFunction(lambda: ["1 Main St, Springfield"])
    location_names = factory.LazyFunction(lambda: ["Main Campus"])
    npis = factory.LazyFunction(lambda: ["1234567890"])
    license_number = factory.Faker("numerify", text="######")
    license_state = "CA"
    version = "2.0.0"
    last_updated_on = factory.LazyFunction(date.today)
