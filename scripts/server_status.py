#!/usr/bin/env python3
from __future__ import annotations

import json

from climate_client import ClimateOrchestrator
from climate_data import ClimateClientError, Location, Period


def _sample_normals(client: ClimateOrchestrator) -> tuple[int, str]:
    sample = [Location(46.87, -71.25, 114.0)]
    try:
        datasets = client.get_monthly_normals(Period.FromNormals1981_2010, sample)
        return len(datasets[0]), ""
    except ClimateClientError as exc:  # pragma: no cover - diagnostics script
        return 0, f"{type(exc).__name__}: {exc}"


def main() -> None:
    with ClimateOrchestrator() as client:
        rows = []
        try:
            rows.append({"check": "memory_load", "value": client.server_memory_load()})
        except ClimateClientError as exc:  # pragma: no cover - diagnostics script
            rows.append({"check": "memory_load", "error": f"{type(exc).__name__}: {exc}"})
        rows.append({"check": "max_locations_per_request", "value": client.max_locations_per_request()})
        try:
            models = client.get_model_list()
            rows.append({"check": "models", "value": len(models), "names": models})
        except ClimateClientError as exc:  # pragma: no cover - diagnostics script
            rows.append({"check": "models", "error": f"{type(exc).__name__}: {exc}"})
        n_months, err = _sample_normals(client)
        rows.append({"check": "normals_sample", "months": n_months, "error": err or None})

    failed = [r for r in rows if r.get("error")]
    print(f"total={len(rows)} failed={len(failed)}")
    for row in rows:
        print(json.dumps(row, ensure_ascii=False))


if __name__ == "__main__":
    main()
