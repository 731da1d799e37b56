import json

import pytest

from content_env import write_schemas  # type: ignore
from errors import UnknownGoodReference  # type: ignore
from register import load_catalog, register_content  # type: ignore


def write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def good(good_id, base_cost=10):
    return {"id": good_id, "display_name": good_id.title(), "category": "RAW_MATERIAL",
            "base_cost": base_cost, "home_region": "asia"}


def test_loads_lists_and_single_objects(tmp_path):
    write(tmp_path / "Good" / "goods.json", [good("tea"), good("rice")])
    write(tmp_path / "Port" / "busan.json", {"id": "busan", "name": "Busan", "region": "asia", "x": 850, "y": 120})
    catalog = load_catalog([tmp_path])
    assert sorted(catalog.goods) == ["rice", "tea"]
    assert catalog.ports["busan"].region == "asia"
    assert catalog.assets == {}


def test_bad_files_and_meta_folders_are_skipped(tmp_path):
    write(tmp_path / "Good" / "ok.json", good("tea"))
    (tmp_path / "Good" / "broken.json").write_text("{not json", encoding="utf-8")
    write(tmp_path / "Good" / "invalid.json", {"id": "salt"})
    write(tmp_path / "meta" / "Good" / "schema.json", good("ignored"))
    write(tmp_path / "Unknown" / "x.json", {"id": "x"})
    registry = register_content([tmp_path])
    assert list(registry["Good"]) == ["tea"]


def test_later_folders_override(tmp_path):
    base, mod = tmp_path / "base", tmp_path / "mod"
    write(base / "Good" / "tea.json", good("tea", 10))
    write(mod / "Good" / "tea.json", good("tea", 99))
    catalog = load_catalog([base, mod, tmp_path / "missing"])
    assert catalog.good("tea").base_cost == 99
    with pytest.raises(UnknownGoodReference):
        catalog.good("coffee")


def test_bundled_content_loads():
    catalog = load_catalog()
    assert {"electronics", "coffee", "luxury-watches"} <= set(catalog.goods)
    assert catalog.assets["cargo-ship"].capacity == 1000
    assert catalog.ports["rotterdam"].region == "europe"


def test_write_schemas(tmp_path):
    written = write_schemas(tmp_path)
    assert sorted(p.parent.name for p in written) == ["AssetDefinition", "Good", "Port"]
    schema = json.loads((tmp_path / "Good" / "schema.json").read_text(encoding="utf-8"))
    assert "base_cost" in schema["properties"]
