import pytest

from stepcredit.core.errors import ValidationError
from stepcredit.services.credits import compute_credits


@pytest.mark.parametrize(
    "steps, base, bonus",
    [
        (0, 0, 0),
        (99, 0, 0),
        (999, 9, 0),
        (1000, 10, 10),
        (4999, 49, 10),
        (5000, 50, 25),
        (9999, 99, 25),
        (10000, 100, 50),
        (12000, 120, 50),
        (100000, 1000, 50),
    ],
)
def test_compute_credits_tiers(steps, base, bonus):
    result = compute_credits(steps)
    assert (result.base, result.bonus, result.total) == (base, bonus, base + bonus)


def test_bonus_does_not_stack():
    # only the highest matching milestone counts
    assert compute_credits(10000).bonus == 50


def test_no_minimum_gate_on_base():
    assert compute_credits(500).base == 5


@pytest.mark.parametrize("steps", [-1, -10000])
def test_negative_steps_rejected(steps):
    with pytest.raises(ValidationError) as exc:
        compute_credits(steps)
    assert exc.value.code == "INVALID_STEPS"


@pytest.mark.parametrize("steps", [1.5, "100", None, True])
def test_non_integer_steps_rejected(steps):
    with pytest.raises(ValidationError):
        compute_credits(steps)
