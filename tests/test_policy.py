import pytest

from adl_gateway.errors import ADLError, ADL_E_BAD_REQUEST, ADL_E_POLICY_INVALID
from adl_gateway.policy import PolicyDocument, PolicyReference, parse_constraint_key


@pytest.mark.parametrize(
    "raw,name,version,key",
    [
        ("finance-constitution", "finance-constitution", None, "finance-constitution@@latest"),
        ("finance-constitution@1.0.0", "finance-constitution", "1.0.0", "finance-constitution@1.0.0"),
        ("finance-constitution@", "finance-constitution", None, "finance-constitution@@latest"),
    ],
)
def test_reference_parse(raw, name, version, key):
    ref = PolicyReference.parse(raw)
    assert ref.name == name
    assert ref.version == version
    assert ref.cache_key == key


@pytest.mark.parametrize("raw", ["", "@1.0.0", "a@b@c", "   "])
def test_reference_parse_rejects_malformed(raw):
    with pytest.raises(ADLError) as ei:
        PolicyReference.parse(raw)
    assert ei.value.code == ADL_E_BAD_REQUEST


def test_constraint_key_convention():
    assert parse_constraint_key("max_discount_pct") == ("max_", "discount_pct")
    assert parse_constraint_key("min_margin_pct") == ("min_", "margin_pct")
    for bad in ("avg_price", "max_", "discount"):
        with pytest.raises(ValueError):
            parse_constraint_key(bad)


def test_document_accepts_camel_and_snake_case(finance_doc):
    camel = PolicyDocument.from_dict(finance_doc)
    snake = PolicyDocument.from_dict(camel.to_dict())
    assert camel == snake
    authority = snake.nodes["finance"].find_authority("approve_discount")
    assert [b.level for b in authority.autonomy_bands] == [1, 2, 3]
    assert authority.escalation_target == "CFO"
    assert snake.nodes["finance"].find_authority("refund") is None


def test_unknown_constraint_prefix_is_rejected_at_parse(finance_doc):
    finance_doc["nodes"]["finance"]["authorities"][0]["autonomyBands"][0]["constraints"]["avg_price"] = 1
    with pytest.raises(ADLError) as ei:
        PolicyDocument.from_dict(finance_doc)
    assert ei.value.code == ADL_E_POLICY_INVALID


@pytest.mark.parametrize("level", [4, -1, "1", True])
def test_band_level_must_be_0_to_3(finance_doc, level):
    finance_doc["nodes"]["finance"]["authorities"][0]["autonomyBands"][0]["level"] = level
    with pytest.raises(ADLError) as ei:
        PolicyDocument.from_dict(finance_doc)
    assert ei.value.code == ADL_E_POLICY_INVALID


def test_non_numeric_threshold_is_rejected(finance_doc):
    finance_doc["nodes"]["finance"]["authorities"][0]["autonomyBands"][0]["constraints"]["max_discount_pct"] = "0.05"
    with pytest.raises(ADLError) as ei:
        PolicyDocument.from_dict(finance_doc)
    assert ei.value.code == ADL_E_POLICY_INVALID


def test_document_without_nodes_is_invalid():
    with pytest.raises(ADLError) as ei:
        PolicyDocument.from_dict({"version": "1"})
    assert ei.value.code == ADL_E_POLICY_INVALID
