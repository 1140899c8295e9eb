"""
Tests for office records, their provider entries and the JSON directory.
"""

import json

from speedmon.offices import (
    InMemoryOfficeDirectory,
    JsonOfficeDirectory,
    Office,
    Provider,
    provider_display_name,
    resolve_provider,
)


def test_providers_with_descriptions_and_sections(office):
    providers = office.providers()
    assert [p.id for p in providers] == ["pldt", "globe", "converge"]
    assert providers[0].description == "Primary ISP"
    assert providers[1].name == "Globe"
    assert providers[1].description == "Backup Line"
    assert providers[2].section == "Admin"
    assert providers[2].description == "Admin - ISP 1"
    assert office.configured_names() == ["PLDT", "Globe", "Converge"]


def test_duplicate_provider_ids_get_counters():
    office = Office(id="o", isps=["PLDT", "PLDT Inc", "pldt.com"])
    assert [p.id for p in office.providers()] == ["pldt", "pldt-2", "pldt-3"]


def test_legacy_single_provider():
    office = Office(id="o", isp="Globe Telecom")
    providers = office.providers()
    assert len(providers) == 1
    assert providers[0].id == "globe"
    assert office.default_identity() == "Globe Telecom"


def test_default_identity_without_legacy_field():
    assert Office(id="o", isps=["Converge (Fiber)"]).default_identity() == "Converge"
    assert Office(id="o").default_identity() == ""


def test_display_names(office):
    by_id = {p.id: p for p in office.providers()}
    assert provider_display_name(by_id["pldt"]) == "PLDT"
    assert provider_display_name(by_id["globe"]) == "Globe (Backup Line)"
    assert provider_display_name(by_id["converge"]) == "Converge"
    assert provider_display_name(Provider("x", "Sky", "ISP 2")) == "Sky"


def test_resolve_provider(office):
    assert resolve_provider(office, "globe").name == "Globe"
    adhoc = resolve_provider(office, "  Smart  ")
    assert adhoc.name == "Smart"
    assert resolve_provider(office, "") is None


def test_from_dict_accepts_json_encoded_lists():
    office = Office.from_dict(
        {
            "id": "office-9",
            "name": "Cebu",
            "isps": json.dumps(["DITO"]),
            "sectionISPs": json.dumps({"Ops": ["Sky"]}),
        }
    )
    assert office.isps == ["DITO"]
    assert office.section_isps == {"Ops": ["Sky"]}


def test_json_directory(tmp_path):
    path = tmp_path / "offices.json"
    path.write_text(json.dumps({"offices": [{"id": "office-1", "isp": "PLDT"}]}))
    directory = JsonOfficeDirectory(str(path))
    assert directory.get("office-1").isp == "PLDT"
    assert directory.get("office-2") is None

    # edits are picked up without reloading the directory
    path.write_text(json.dumps([{"id": "office-2", "isps": ["Globe"]}]))
    assert directory.get("office-2").isps == ["Globe"]


def test_json_directory_missing_file(tmp_path):
    assert JsonOfficeDirectory(str(tmp_path / "absent.json")).get("office-1") is None


def test_in_memory_directory_add_replaces_by_id(office):
    directory = InMemoryOfficeDirectory()
    assert directory.get(office.id) is None
    directory.add(office)
    assert directory.get(office.id) is office
    directory.add(Office(id=office.id, isp="DITO"))
    assert directory.get(office.id).default_identity() == "DITO"
