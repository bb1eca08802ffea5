import pytest

from wholesale.money import Money
from wholesale.services import credit_policy


class TestCreditPolicy:
    @pytest.mark.parametrize(
        "balance,expected",
        [(0, 0), (2500, 0), (-2500, 2500)],
    )
    def test_owed(self, balance, expected):
        assert credit_policy.owed(Money(balance)) == Money(expected)

    def test_available_counts_prepaid_as_zero_owed(self):
        limit = Money(10000)
        assert credit_policy.available(limit, Money(0)) == Money(10000)
        assert credit_policy.available(limit, Money(5000)) == Money(10000)
        assert credit_policy.available(limit, Money(-8000)) == Money(2000)
        assert credit_policy.available(limit, Money(-12000)) == Money(-2000)

    def test_is_over_limit(self):
        limit = Money(10000)
        assert not credit_policy.is_over_limit(limit, Money(-10000))
        assert credit_policy.is_over_limit(limit, Money(-10001))
        assert not credit_policy.is_over_limit(Money(0), Money(0))

    def test_can_place_on_account_boundary(self):
        limit = Money(10000)
        balance = Money(-8000)
        assert credit_policy.can_place_on_account(limit, balance, Money(2000))
        assert not credit_policy.can_place_on_account(limit, balance, Money(2001))

    def test_raising_the_limit_never_blocks_an_allowed_order(self):
        balance = Money(-4000)
        total = Money(3000)
        allowed = [
            credit_policy.can_place_on_account(Money(limit), balance, total)
            for limit in range(0, 20001, 500)
        ]
        # Once allowed, every higher limit is also allowed
        first = allowed.index(True)
        assert all(allowed[first:])
        assert not any(allowed[:first])

    @pytest.mark.parametrize("limit", [0, 100, 10000])
    @pytest.mark.parametrize("balance", [-20000, -10001, -10000, -101, -1, 0, 500])
    @pytest.mark.parametrize("epsilon", [1, 50, 10000])
    def test_over_limit_stays_over_as_balance_falls(self, limit, balance, epsilon):
        lowered = Money(balance - epsilon)
        assert credit_policy.owed(lowered) >= credit_policy.owed(Money(balance))
        if credit_policy.is_over_limit(Money(limit), Money(balance)):
            assert credit_policy.is_over_limit(Money(limit), lowered)

    @pytest.mark.parametrize(
        "limit,balance",
        [(0, -1), (100, -101), (10000, -10001), (10000, -20000)],
    )
    def test_over_limit_cases_remain_over(self, limit, balance):
        assert credit_policy.is_over_limit(Money(limit), Money(balance))
        for epsilon in (1, 50, 10000):
            assert credit_policy.is_over_limit(Money(limit), Money(balance - epsilon))

    def test_shortfall(self):
        assert credit_policy.shortfall(Money(10000), Money(-8000), Money(3000)) == Money(1000)
        assert credit_policy.shortfall(Money(10000), Money(0), Money(3000)) == Money(0)

    def test_validate_payment_amount(self):
        assert credit_policy.validate_payment_amount(Money(0), Money(-500)) is not None
        assert credit_policy.validate_payment_amount(Money(9000), Money(-500)) is None
        message = credit_policy.validate_payment_amount(Money(900), Money(-500), allow_overpayment=False)
        assert message == "Payment amount cannot exceed owed amount of $5.00."
        assert credit_policy.validate_payment_amount(Money(500), Money(-500), allow_overpayment=False) is None
