"""
Test suite for loan product catalog
"""

import pytest
from decimal import Decimal

from lending_core.currency import Money, Currency
from lending_core.storage import InMemoryStorage
from lending_core.audit import AuditTrail, AuditEventType
from lending_core.products import ProductCatalog
from lending_core.errors import ValidationError, NotFoundError


def kes(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.KES)


class TestProductCatalog:
    """Test product creation, lookup and deactivation"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.catalog = ProductCatalog(self.storage, self.audit)

    def create(self, name="Personal Loan", min_amount=1000, max_amount=500000, **kwargs):
        params = dict(
            name=name,
            min_amount=kes(min_amount),
            max_amount=kes(max_amount),
            interest_rate=Decimal('0.12'),
            min_term_months=1,
            max_term_months=36
        )
        params.update(kwargs)
        return self.catalog.create_product(**params)

    def test_create_product(self):
        product = self.create(processing_fee_rate='0.02', created_by="admin")

        assert product.is_active
        assert product.currency == Currency.KES
        assert product.late_payment_fee == kes(100)
        assert product.processing_fee_rate == Decimal('0.02')

        stored = self.catalog.get_product(product.id)
        assert stored.max_amount == kes(500000)
        assert stored.interest_rate == Decimal('0.12')

        events = self.audit.get_events_for_entity("product", product.id)
        assert events[0].event_type == AuditEventType.PRODUCT_CREATED
        assert events[0].user_id == "admin"

    def test_bounds_checks(self):
        product = self.create()
        assert product.amount_in_range(kes(1000))
        assert product.amount_in_range(kes(500000))
        assert not product.amount_in_range(kes('999.99'))
        assert product.term_in_range(36)
        assert not product.term_in_range(37)

    @pytest.mark.parametrize("kwargs", [
        {"name": "  "},
        {"min_amount": 0},
        {"min_amount": 5000, "max_amount": 1000},
        {"min_term_months": 0},
        {"min_term_months": 24, "max_term_months": 12},
        {"max_term_months": 361},
        {"interest_rate": Decimal('-0.01')},
        {"processing_fee_rate": Decimal('-0.01')},
        {"late_payment_fee": Money(Decimal('-1'), Currency.KES)},
        {"late_payment_fee": Money(Decimal('5'), Currency.USD)},
    ])
    def test_invalid_products(self, kwargs):
        with pytest.raises(ValidationError):
            self.create(**kwargs)
        assert self.storage.count("loan_products") == 0

    def test_mixed_currency_bounds(self):
        with pytest.raises(ValidationError):
            self.catalog.create_product(
                "Mixed", kes(1000), Money(Decimal('5000'), Currency.USD),
                Decimal('0.1'), 1, 12
            )

    def test_active_products_sorted_by_minimum(self):
        large = self.create("Business", min_amount=50000, max_amount=1000000)
        small = self.create("Salary Advance", min_amount=500, max_amount=20000)
        retired = self.create("Legacy", min_amount=100, max_amount=1000)
        self.catalog.deactivate_product(retired.id, "admin")

        assert [p.id for p in self.catalog.get_loan_products()] == [small.id, large.id]
        assert not self.catalog.get_product(retired.id).is_active

    def test_unknown_product(self):
        assert self.catalog.get_product("missing") is None
        with pytest.raises(NotFoundError):
            self.catalog.require_product("missing")
        with pytest.raises(NotFoundError):
            self.catalog.deactivate_product("missing")
