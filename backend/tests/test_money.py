from decimal import Decimal

import pytest

from wholesale.money import Money, sum_money


class TestMoney:
    def test_rejects_floats_and_bools(self):
        with pytest.raises(TypeError):
            Money(10.5)
        with pytest.raises(TypeError):
            Money(True)
        with pytest.raises(TypeError):
            Money.parse(1.25)

    def test_parse_dollar_strings_rounds_half_up_once(self):
        assert Money.parse("12.50").cents == 1250
        assert Money.parse("$1,234.565").cents == 123457
        assert Money.parse("0.005").cents == 1
        assert Money.parse("-3").cents == -300
        assert Money.parse(250).cents == 250

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            Money.parse("twelve")
        with pytest.raises(ValueError):
            Money.parse("NaN")

    def test_arithmetic_is_exact(self):
        assert Money(1050) + Money(250) == Money(1300)
        assert Money(100) - Money(250) == Money(-150)
        assert -Money(5) == Money(-5)
        assert abs(Money(-5)) == Money(5)
        assert sum_money([Money(1), Money(2), Money(3)]) == Money(6)
        assert sum_money([]) == Money.zero()

    def test_cannot_mix_with_plain_numbers(self):
        with pytest.raises(TypeError):
            Money(100) + 5

    def test_multiply_rounds_half_up(self):
        assert Money(333).multiply(3) == Money(999)
        assert Money(1000).multiply("0.0825") == Money(83)   # 82.5 -> 83
        assert Money(1000).multiply(Decimal("0.0824")) == Money(82)
        with pytest.raises(TypeError):
            Money(100).multiply(0.5)

    def test_ordering(self):
        assert Money(-1) < Money.zero() < Money(1)
        assert max(Money(3), Money(7)) == Money(7)

    def test_format(self):
        assert Money(123456).format() == "$1,234.56"
        assert Money(-500).format() == "-$5.00"
        assert Money(7).format() == "$0.07"
        assert str(Money(2000)) == "$20.00"
        assert Money(2000).to_dict() == {"cents": 2000, "display": "$20.00"}
