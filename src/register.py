# src/register.py
"""
Scans the given content folders plus the local `content/` directory, loads all
JSON seed definitions into Pydantic models and registers them by id.
Ignores any subfolder named "meta" or starting with a dot.
Later folders override earlier definitions that share an id.
"""
import json
from pathlib import Path
from typing import Dict, List, Type

from pydantic import BaseModel, ValidationError as ModelValidationError

import objects as G
from errors import UnknownGoodReference
from logger import logs

LOCAL_CONTENT = Path(__file__).resolve().parent.parent / "content"

# folder name -> model
CONTENT_MODELS: Dict[str, Type[BaseModel]] = {
    "Good": G.Good,
    "AssetDefinition": G.AssetDefinition,
    "Port": G.Port,
}


class Catalog(BaseModel):
    """Static seed data: goods, asset blueprints and ports, keyed by id."""

    goods: Dict[str, G.Good] = {}
    assets: Dict[str, G.AssetDefinition] = {}
    ports: Dict[str, G.Port] = {}

    def good(self, good_id: str) -> G.Good:
        good = self.goods.get(good_id)
        if good is None:
            raise UnknownGoodReference(f"unknown good {good_id!r}", good_id=good_id)
        return good


def is_valid_folder(path: Path) -> bool:
    return (
        path.is_dir()
        and not path.name.startswith('.')
        and path.name != 'meta'
    )


def register_content(folders: List[Path]) -> Dict[str, Dict[str, BaseModel]]:
    """
    Load every JSON file in each valid model subfolder and collect them into
    { model_name: { id: instance, ... } }. A file may hold one object or a list.
    """
    registry: Dict[str, Dict[str, BaseModel]] = {name: {} for name in CONTENT_MODELS}

    for folder in folders:
        if not folder.exists():
            continue
        for sub in sorted(folder.iterdir()):
            if not is_valid_folder(sub):
                continue
            model_cls = CONTENT_MODELS.get(sub.name)
            if model_cls is None:
                # skip unknown model folders
                continue
            for json_file in sorted(sub.glob("*.json")):
                try:
                    data = json.loads(json_file.read_text(encoding="utf-8"))
                    entries = data if isinstance(data, list) else [data]
                    for entry in entries:
                        instance = model_cls.model_validate(entry)
                        registry[sub.name][instance.id] = instance
                except (json.JSONDecodeError, ModelValidationError) as e:
                    logs.warning(f"Error parsing {json_file}: {e}")

    return registry


def load_catalog(folders: List[Path] | None = None) -> Catalog:
    registry = register_content(folders if folders is not None else [LOCAL_CONTENT])
    catalog = Catalog(
        goods=registry["Good"],
        assets=registry["AssetDefinition"],
        ports=registry["Port"],
    )
    logs.info(
        f"Loaded {len(catalog.goods)} goods, {len(catalog.assets)} asset definitions, "
        f"{len(catalog.ports)} ports."
    )
    return catalog


def main():
    catalog = load_catalog()
    for name, collection in (("Good", catalog.goods), ("AssetDefinition", catalog.assets), ("Port", catalog.ports)):
        print(f"Loaded {len(collection)} {name} entries.")


if __name__ == "__main__":
    main()
