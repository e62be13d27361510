from __future__ import annotations

import logging
import math
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from climate_client import ClimateOrchestrator
from climate_data import (
    AggregationError,
    ClimateModel,
    ConnectivityError,
    Dataset,
    DecodeError,
    Location,
    Month,
    Period,
    RCP,
    ServerError,
    ValidationError,
)


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("BIOSIM_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("biosim")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("BIOSIM_LOG_FILE", "").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


_configure_logging()
LOGGER = logging.getLogger("biosim.app")

app = FastAPI(title="BioSIM Climate Client")


def _allowed_cors_origins() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)

client = ClimateOrchestrator()


def _parse_float_list(raw: str, name: str) -> List[float]:
    values = []
    for token in str(raw).split(","):
        token = token.strip()
        if not token:
            continue
        try:
            values.append(float(token))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid {name} value: {token}") from exc
    return values


def _parse_locations(lat: str, lon: str, elev: str | None) -> List[Location]:
    lats = _parse_float_list(lat, "lat")
    lons = _parse_float_list(lon, "lon")
    elevs = _parse_float_list(elev, "elev") if elev else [math.nan] * len(lats)
    if not lats:
        raise HTTPException(status_code=400, detail="No locations requested")
    if not (len(lats) == len(lons) == len(elevs)):
        raise HTTPException(status_code=400, detail="lat, lon and elev must have the same number of values")
    for la, lo in zip(lats, lons):
        if not (-90.0 <= la <= 90.0 and -180.0 <= lo <= 180.0):
            raise HTTPException(status_code=400, detail=f"Coordinates out of range: {la},{lo}")
    return [Location(la, lo, el) for la, lo, el in zip(lats, lons, elevs)]


def _parse_months(months: str | None) -> List[Month] | None:
    if not months:
        return None
    out: List[Month] = []
    for token in str(months).split(","):
        token = token.strip()
        if not token:
            continue
        try:
            out.append(Month(int(token)))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown month: {token}") from exc
    return out or None


def _parse_enum(enum_cls, raw: str | None):
    if not raw:
        return None
    for member in enum_cls:
        if raw in (member.name, member.value):
            return member
    raise HTTPException(status_code=400, detail=f"Unknown {enum_cls.__name__} value: {raw}")


def _dataset_payload(location: Location, dataset: Dataset) -> Dict[str, object]:
    return {
        "location": {
            "lat": location.latitude_deg,
            "lon": location.longitude_deg,
            "elev": None if math.isnan(location.elevation_m) else location.elevation_m,
        },
        "fields": dataset.field_names,
        "types": [t.value for t in dataset.field_types],
        "records": [[None if isinstance(v, float) and math.isnan(v) else v for v in rec] for rec in dataset.records],
    }


def _raise_http(exc: Exception, what: str) -> None:
    if isinstance(exc, ValidationError):
        LOGGER.warning("%s request invalid: %s", what, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, AggregationError):
        LOGGER.warning("%s aggregation failed: %s", what, exc)
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if isinstance(exc, (ServerError, DecodeError)):
        LOGGER.warning("%s rejected by BioSIM: %s", what, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if isinstance(exc, ConnectivityError):
        LOGGER.warning("%s connectivity error: %s", what, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    raise exc


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    client.close()


@app.get("/api/models")
def models() -> Dict[str, object]:
    try:
        names = client.get_model_list()
    except (ConnectivityError, ServerError) as exc:
        _raise_http(exc, "Model list")
    return {"models": names}


@app.get("/api/normals")
def normals(
    period: str = Query("1981_2010"),
    lat: str = Query(...),
    lon: str = Query(...),
    elev: str | None = Query(None),
    rcp: str | None = Query(None),
    climate_model: str | None = Query(None),
    months: str | None = Query(None),
) -> Dict[str, object]:
    locations = _parse_locations(lat, lon, elev)
    month_list = _parse_months(months)
    try:
        datasets = client.get_normals(
            Period.from_label(period),
            locations,
            rcp=_parse_enum(RCP, rcp),
            climate_model=_parse_enum(ClimateModel, climate_model),
            months=month_list,
        )
    except (ValidationError, AggregationError, ServerError, DecodeError, ConnectivityError) as exc:
        _raise_http(exc, "Normals")
    LOGGER.debug("Normals served period=%s locations=%d", period, len(locations))
    return {
        "period": period,
        "months": [int(m) for m in month_list] if month_list else None,
        "results": [_dataset_payload(loc, ds) for loc, ds in zip(locations, datasets)],
    }


@app.get("/api/model-output")
def model_output(
    model: str = Query(...),
    from_year: int = Query(...),
    to_year: int = Query(...),
    lat: str = Query(...),
    lon: str = Query(...),
    elev: str | None = Query(None),
    rcp: str | None = Query(None),
    climate_model: str | None = Query(None),
    replicates: int = Query(1, ge=1),
    ephemeral: bool = Query(False),
) -> Dict[str, object]:
    locations = _parse_locations(lat, lon, elev)
    try:
        datasets = client.get_model_output(
            from_year,
            to_year,
            locations,
            model,
            rcp=_parse_enum(RCP, rcp),
            climate_model=_parse_enum(ClimateModel, climate_model),
            replicates=replicates,
            ephemeral=ephemeral,
        )
    except (ValidationError, ServerError, DecodeError, ConnectivityError) as exc:
        _raise_http(exc, "Model output")
    LOGGER.debug("Model output served model=%s locations=%d", model, len(locations))
    return {
        "model": model,
        "from_year": from_year,
        "to_year": to_year,
        "results": [_dataset_payload(loc, ds) for loc, ds in zip(locations, datasets)],
    }


@app.get("/health")
def health() -> Dict[str, object]:
    return {"status": "ok", "cached_handles": len(client.handle_cache)}
