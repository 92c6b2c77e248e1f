from __future__ import annotations

import pytest

from venture_crm.importer.mapping import (
    FieldBag,
    FieldMapper,
    MappingError,
    MappingLoadError,
    classify,
    extract_flag_columns,
    get_active_mapping,
    is_x_marked,
    load_mapping,
)


@pytest.fixture
def investor_mapper(workspace_id):
    return FieldMapper(get_active_mapping("investor"), workspace_id)


@pytest.fixture
def firm_mapper(workspace_id):
    return FieldMapper(get_active_mapping("firm"), workspace_id)


@pytest.mark.parametrize("value", ["x", "X", " x ", "x\n"])
def test_x_marked_values(value):
    assert is_x_marked(value) is True


@pytest.mark.parametrize("value", [None, "", "yes", "xx", "✓", "1", True, "Y"])
def test_other_checkbox_values_are_not_marked(value):
    assert is_x_marked(value) is False


def test_flag_columns_keep_configured_order():
    fields = {"Seed": "x", "Pre-seed": "X", "Series A": "no"}
    assert extract_flag_columns(fields, ["Pre-seed", "Seed", "Series A"]) == ["Pre-seed", "Seed"]


def test_field_bag_only_returns_requested_workspace():
    bag = FieldBag.from_record(
        {"customFieldValues": {"grp_main": {"Type": "VC"}, "grp_other": {"Type": "Angel"}, "broken": "nope"}}
    )

    assert dict(bag.extract("grp_main")) == {"Type": "VC"}
    assert dict(bag.extract("missing")) == {}
    assert set(bag.workspaces()) == {"grp_main", "grp_other"}


def test_field_bag_tolerates_records_without_custom_fields():
    assert dict(FieldBag.from_record({"id": "per_1"}).extract("grp_main")) == {}


def test_classify_maps_synonyms_and_drops_unknown_vocabulary():
    synonyms = {"vc": "Venture Capital", "cvc": "Corporate VC"}
    assert classify(" VC ", synonyms) == "Venture Capital"
    assert classify("hedge fund", synonyms) is None
    assert classify("", synonyms) is None


def test_investor_mapping_uses_only_workspace_fields(investor_mapper, folk_person):
    record = folk_person(
        "per_1",
        emails=["Ada@Example.com"],
        urls=["https://www.linkedin.com/in/ada", "https://x.com/ada"],
        companies=[{"id": "com_1", "name": "Acme Ventures"}],
        fields={"Type": "VC", "AI/ML": "x", "Seed": "X", "Biotech": "yes"},
    )
    record["customFieldValues"]["grp_other"] = {"Type": "Angel", "Website": "https://elsewhere.test"}

    canonical = investor_mapper.map_record(record).canonical

    assert canonical["external_id"] == "per_1"
    assert canonical["full_name"] == "Ada Lovelace"
    assert canonical["email"] == "ada@example.com"
    assert canonical["investor_type"] == "Venture Capital"
    assert canonical["sectors"] == ["AI/ML"]
    assert canonical["stages"] == ["Seed"]
    assert canonical["linkedin_url"] == "https://www.linkedin.com/in/ada"
    assert canonical["twitter_url"] == "https://x.com/ada"
    assert canonical["website"] is None
    assert canonical["firm_name"] == "Acme Ventures"
    assert canonical["external_groups"] == ["grp_main"]


def test_full_name_is_composed_when_missing(investor_mapper, folk_person):
    record = folk_person("per_2", first="Grace", last="Hopper", fullName="")
    assert investor_mapper.map_record(record).canonical["full_name"] == "Grace Hopper"


def test_missing_required_name_raises_mapping_error(investor_mapper, folk_person):
    record = folk_person("per_3", first="", last="", fullName=" ")

    with pytest.raises(MappingError) as excinfo:
        investor_mapper.map_record(record)

    assert excinfo.value.field == "full_name"


def test_firm_mapping_flags_placeholders_and_description(firm_mapper, folk_company):
    record = folk_company(
        "com_1",
        name="  Acme Ventures ",
        description="Deeptech fund",
        urls=["https://acme.vc", "https://linkedin.com/company/acme"],
        fields={
            "Type": "Corporate Venture Capital",
            "AI/ML": "x",
            "Energy": "X",
            "Healthtech": "maybe",
            "Europe": "x",
            "Min ticket": "--",
            "Max ticket": "5M",
            "Parent Company": "Acme Group",
            "DT Only?": "Yes",
        },
    )

    result = firm_mapper.map_record(record)
    canonical = result.canonical

    assert canonical["name"] == "Acme Ventures"
    assert canonical["firm_type"] == "Corporate VC"
    assert canonical["sectors"] == ["AI/ML", "Energy"]
    assert canonical["industry"] == "AI/ML, Energy"
    assert canonical["locations"] == ["Europe"]
    assert canonical["location"] == "Europe"
    assert canonical["min_ticket"] is None
    assert canonical["max_ticket"] == "5M"
    assert canonical["website"] == "https://acme.vc"
    assert canonical["linkedin_url"] == "https://linkedin.com/company/acme"
    assert canonical["description"] == "Deeptech fund. Parent Company: Acme Group. DeepTech focused"
    assert "Healthtech" not in canonical["sectors"]


def test_mapping_is_deterministic(firm_mapper, folk_company):
    record = folk_company("com_2", fields={"Biotech": "x", "Type": "vc"})
    assert firm_mapper.map_record(record).checksum == firm_mapper.map_record(record).checksum


def test_unmapped_custom_fields_are_reported(investor_mapper, folk_person):
    record = folk_person("per_4", fields={"Favourite colour": "green", "Type": "vc"})
    assert investor_mapper.map_record(record).unmapped_fields == ["Favourite colour"]


def test_active_mapping_is_cached_per_app():
    assert get_active_mapping("investors") is get_active_mapping("investor")


def test_load_mapping_rejects_unknown_transform(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(
        "version: 1\nadapter: folk\nentity: firm\ncollection: companies\n"
        "fields:\n  - target: name\n    transform: shout\n    sources:\n      - record: name\n",
        encoding="utf-8",
    )

    with pytest.raises(MappingLoadError, match="Unknown transform"):
        load_mapping(path)


def test_load_mapping_requires_known_entity(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("version: 1\nadapter: folk\nentity: deal\ncollection: deals\nfields: []\n", encoding="utf-8")

    with pytest.raises(MappingLoadError):
        load_mapping(path)
