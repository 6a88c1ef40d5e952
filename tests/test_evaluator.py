import pytest

from adl_gateway.errors import ADLError, ADL_E_BAD_REQUEST
from adl_gateway.evaluator import ActionRequest, evaluate
from adl_gateway.policy import Authority, AutonomyBand, Escalation, PolicyDocument


def _authority(finance_doc) -> Authority:
    return PolicyDocument.from_dict(finance_doc).nodes["finance"].find_authority("approve_discount")


def _eval(finance_doc, **data):
    return evaluate(ActionRequest("approve_discount", data), _authority(finance_doc))


def test_lowest_satisfied_band_wins(finance_doc):
    r = _eval(finance_doc, discount_pct=0.10, margin_pct=0.24)
    assert r.approved is True
    assert r.autonomy_level == 2
    assert "AL2" in r.reason
    assert r.matched_band.constraints == {"max_discount_pct": 0.12, "min_margin_pct": 0.23}
    assert r.escalation_target is None


def test_thresholds_are_inclusive(finance_doc):
    r = _eval(finance_doc, discount_pct=0.05, margin_pct=0.25)
    assert r.autonomy_level == 1


def test_just_over_threshold_falls_to_next_band(finance_doc):
    assert _eval(finance_doc, discount_pct=0.05, margin_pct=0.30).autonomy_level == 1
    assert _eval(finance_doc, discount_pct=0.051, margin_pct=0.30).autonomy_level == 2


def test_no_band_escalates_to_configured_target(finance_doc):
    r = _eval(finance_doc, discount_pct=0.20, margin_pct=0.30)
    assert r.approved is False
    assert r.autonomy_level == 0
    assert r.escalation_target == "CFO"
    assert "Escalating" in r.reason
    assert r.matched_band is None
    out = r.to_output()
    assert out["escalation_target"] == "CFO"
    assert "matched_band" not in out


def test_escalation_defaults_to_supervisor():
    authority = Authority(
        action="ship",
        autonomy_bands=(AutonomyBand(level=1, constraints={"max_weight": 10}),),
    )
    r = evaluate(ActionRequest("ship", {"weight": 11}), authority)
    assert r.escalation_target == "supervisor"

    authority = Authority(
        action="ship",
        autonomy_bands=(AutonomyBand(level=1, constraints={"max_weight": 10}),),
        escalation=Escalation(notify=("ops@example.com",)),
    )
    assert evaluate(ActionRequest("ship", {"weight": 11}), authority).escalation_target == "supervisor"


def test_bands_are_sorted_by_level_before_matching():
    authority = Authority(
        action="ship",
        autonomy_bands=(
            AutonomyBand(level=3, constraints={"max_weight": 100}),
            AutonomyBand(level=1, constraints={"max_weight": 10}),
        ),
    )
    assert evaluate(ActionRequest("ship", {"weight": 5}), authority).autonomy_level == 1
    assert evaluate(ActionRequest("ship", {"weight": 50}), authority).autonomy_level == 3


def test_matched_level_zero_band_escalates():
    authority = Authority(
        action="ship",
        autonomy_bands=(
            AutonomyBand(level=0, constraints={"max_weight": 500}),
            AutonomyBand(level=2, constraints={"max_weight": 1000}),
        ),
        escalation=Escalation(if_outside="dispatch"),
    )
    r = evaluate(ActionRequest("ship", {"weight": 200}), authority)
    assert r.approved is False
    assert r.autonomy_level == 0
    assert r.escalation_target == "dispatch"
    assert r.reason.startswith("Escalating to dispatch")
    assert r.matched_band.level == 0

    assert evaluate(ActionRequest("ship", {"weight": 800}), authority).approved is True


def test_action_mismatch_is_bad_request(finance_doc):
    with pytest.raises(ADLError) as ei:
        evaluate(ActionRequest("refund", {}), _authority(finance_doc))
    assert ei.value.code == ADL_E_BAD_REQUEST
    assert "Action mismatch" in ei.value.message


def test_no_bands_is_bad_request():
    with pytest.raises(ADLError) as ei:
        evaluate(ActionRequest("ship", {}), Authority(action="ship"))
    assert ei.value.code == ADL_E_BAD_REQUEST
    assert "no autonomy bands" in ei.value.message


def test_missing_field_fails_fast(finance_doc):
    with pytest.raises(ADLError) as ei:
        _eval(finance_doc, discount_pct=0.01)
    assert ei.value.code == ADL_E_BAD_REQUEST
    assert "Missing required field" in ei.value.message
    assert ei.value.details["field"] == "margin_pct"


@pytest.mark.parametrize("bad", ["0.1", True, None, [0.1]])
def test_non_numeric_field_is_bad_request(finance_doc, bad):
    with pytest.raises(ADLError) as ei:
        _eval(finance_doc, discount_pct=bad, margin_pct=0.3)
    assert ei.value.code == ADL_E_BAD_REQUEST


def test_integer_inputs_compare_numerically():
    authority = Authority(action="ship", autonomy_bands=(AutonomyBand(level=2, constraints={"min_qty": 3}),))
    assert evaluate(ActionRequest("ship", {"qty": 3}), authority).approved is True
    assert evaluate(ActionRequest("ship", {"qty": 2.5}), authority).approved is False
