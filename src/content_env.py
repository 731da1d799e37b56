# src/content_env.py
"""
Writes a JSON Schema for every seed content model (see register.CONTENT_MODELS)
to content/meta/<ModelName>/schema.json, so content authors get editor validation.
"""
import json
from pathlib import Path
from typing import List, Optional

from logger import logs
from register import CONTENT_MODELS, LOCAL_CONTENT


def write_schemas(output_base: Optional[Path] = None) -> List[Path]:
    output_base = output_base or LOCAL_CONTENT / "meta"
    output_base.mkdir(parents=True, exist_ok=True)

    written = []
    for name, cls in CONTENT_MODELS.items():
        model_dir = output_base / name
        model_dir.mkdir(parents=True, exist_ok=True)

        schema_file = model_dir / "schema.json"
        with open(schema_file, "w", encoding="utf-8") as f:
            json.dump(cls.model_json_schema(), f, indent=2)
        logs.info(f"Wrote schema for '{name}' to {schema_file}")
        written.append(schema_file)
    return written


def main():
    write_schemas()


if __name__ == "__main__":
    main()
