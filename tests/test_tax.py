import pytest

from settlement.core.results import ConfigurationError, UnknownTaxStatusError
from settlement.core.tax import calculate_tax, coerce_tax_status
from settlement.models import TaxStatus


def test_individual_payout_withholds_income_tax_and_social():
    breakdown = calculate_tax(10_000, TaxStatus.INDIVIDUAL)
    assert breakdown.tax == 1300
    assert breakdown.social == 3000
    assert breakdown.net == 5700


def test_self_employed_payout_is_not_withheld():
    breakdown = calculate_tax(10_000, TaxStatus.SELF_EMPLOYED)
    assert (breakdown.tax, breakdown.social, breakdown.net) == (0, 0, 10_000)
    assert breakdown.self_employed_estimate == 600


def test_individual_amounts_are_floored():
    breakdown = calculate_tax(1_001, "individual")
    assert breakdown.tax == 130
    assert breakdown.social == 300
    assert breakdown.net == 571
    assert breakdown.net + breakdown.tax + breakdown.social == 1_001


@pytest.mark.parametrize("status", [TaxStatus.UNKNOWN, None, "something-else"])
def test_unknown_status_refuses_to_compute(status):
    with pytest.raises(UnknownTaxStatusError):
        calculate_tax(10_000, status)


def test_unknown_status_is_a_configuration_error():
    assert issubclass(UnknownTaxStatusError, ConfigurationError)


def test_negative_gross_rejected():
    with pytest.raises(ValueError):
        calculate_tax(-1, TaxStatus.INDIVIDUAL)


def test_coerce_tax_status_accepts_flags():
    assert coerce_tax_status(True) is TaxStatus.SELF_EMPLOYED
    assert coerce_tax_status(False) is TaxStatus.INDIVIDUAL
    assert coerce_tax_status("selfEmployed") is TaxStatus.SELF_EMPLOYED
