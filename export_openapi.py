import json
from pathlib import Path

from geoip_api.main import create_app
from geoip_api.registry import ProviderRegistry


def main() -> None:
    # An empty registry avoids opening database files just to describe the routes.
    schema = create_app(registry=ProviderRegistry()).openapi()
    out_path = Path("openapi") / "geoip-api.generated.json"
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(schema, indent=2))
    print(f"Wrote {out_path}")  # noqa: T201


if __name__ == "__main__":
    main()
