"""Import region boundaries from a GeoJSON FeatureCollection.

The source can be a local file or a URL. Regions are matched by name
(case-insensitively): an existing region gets its boundary replaced, a new
name creates a region.

    python scripts/import_regions.py regions.geojson                 # dry run
    python scripts/import_regions.py https://.../adm1.geojson --name-property NAME_1 --import
"""

import json
from pathlib import Path

import httpx

from geofoncier.backends import build_backend
from geofoncier.config import Settings
from geofoncier.database import build_engine, init_db, make_session_factory
from geofoncier.errors import ValidationError
from geofoncier.geometry import require_polygonal
from geofoncier.spatial import SpatialQueryEngine


def load_features(source: str) -> list[dict]:
    """Features from a FeatureCollection at a path or URL."""
    if source.startswith(("http://", "https://")):
        print(f"Fetching {source}...")
        response = httpx.get(source, timeout=60.0, follow_redirects=True)
        response.raise_for_status()
        data = response.json()
    else:
        data = json.loads(Path(source).read_text(encoding="utf-8"))

    if data.get("type") == "Feature":
        return [data]
    if data.get("type") != "FeatureCollection":
        raise SystemExit(f"{source}: expected a GeoJSON Feature or FeatureCollection")
    return data.get("features") or []


def with_name(feature: dict, name_property: str) -> dict:
    """Copy of the feature whose ``properties.name`` comes from ``name_property``."""
    properties = dict(feature.get("properties") or {})
    if name_property != "name":
        properties["name"] = properties.get(name_property)
    return {**feature, "properties": properties}


def import_regions(source: str, name_property: str = "name", dry_run: bool = True):
    features = [with_name(f, name_property) for f in load_features(source)]
    print(f"Found {len(features)} feature(s) in {source}")

    if dry_run:
        valid = 0
        for index, feature in enumerate(features):
            name = feature["properties"].get("name")
            try:
                if not name or not str(name).strip():
                    raise ValidationError("missing name")
                require_polygonal(feature.get("geometry"))
            except ValidationError as e:
                print(f"  [{index}] {name or '<no name>'}: skipped ({e.message})")
                continue
            valid += 1
            print(f"  [{index}] {name}: {feature['geometry']['type']}")
        print(f"\n=== Dry run complete. {valid} of {len(features)} feature(s) importable. ===")
        print("Use --import to actually import data.")
        return

    settings = Settings.from_env()
    engine = build_engine(settings)
    init_db(engine)
    session = make_session_factory(engine)()
    spatial = SpatialQueryEngine(session, build_backend(settings.backend_name), settings)

    created = updated = failed = 0
    try:
        for index, feature in enumerate(features):
            try:
                region, was_created = spatial.import_region(feature)
            except ValidationError as e:
                failed += 1
                print(f"  [{index}] {feature['properties'].get('name') or '<no name>'}: {e.message}")
                continue
            if was_created:
                created += 1
            else:
                updated += 1
            print(f"  [{index}] {region.name}: {'created' if was_created else 'boundary replaced'}")
    finally:
        session.close()
        engine.dispose()

    print("\n=== Import complete! ===")
    print(f"  {created} region(s) created")
    print(f"  {updated} region(s) updated")
    print(f"  {failed} feature(s) rejected")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Import region boundaries from GeoJSON")
    parser.add_argument("source", help="Path or URL of a GeoJSON FeatureCollection")
    parser.add_argument("--name-property", default="name",
                        help="Feature property holding the region name (default: name)")
    parser.add_argument("--import", dest="do_import", action="store_true",
                        help="Actually import data (default is dry run)")
    args = parser.parse_args()

    import_regions(args.source, name_property=args.name_property, dry_run=not args.do_import)
