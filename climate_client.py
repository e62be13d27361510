from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
import logging
import math
import os
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Sequence, Tuple, TypeVar

import requests

from climate_data import (
    ALL_MONTHS,
    MONTH_FIELD,
    VARIABLE_FIELD_NAMES,
    ClimateModel,
    ConnectivityError,
    Dataset,
    DecodeError,
    Location,
    Month,
    Period,
    RCP,
    ServerError,
    VARIABLES,
    ValidationError,
    aggregate_months,
    decode_tabular_reply,
)

BIOSIM_BASE_URL = os.getenv("BIOSIM_BASE_URL", "http://repicea.dynu.net:80").rstrip("/")
BIOSIM_TIMEOUT_SECONDS = float(os.getenv("BIOSIM_TIMEOUT_SECONDS", "60"))
GENERATION_WORKERS = int(os.getenv("BIOSIM_GENERATION_WORKERS", "2"))
PARALLEL_MIN_LOCATIONS = int(os.getenv("BIOSIM_PARALLEL_MIN_LOCATIONS", "20"))

MAX_LOCATIONS_PER_BATCH_GENERATION = 10
MAX_LOCATIONS_PER_BATCH_MODEL = 10
MAX_LOCATIONS_PER_BATCH_NORMALS = 50
MAX_HANDLES_PER_BATCH_RELEASE = 200
FALLBACK_MAX_LOCATIONS_PER_REQUEST = 1000
REQUEST_CEILING_SHARE_OF_SERVER_MEMORY = 0.05
MAX_NB_NEIGHBOURS = 35

LATITUDE_TOLERANCE_DEG = 1e-5
LONGITUDE_TOLERANCE_DEG = 1e-5
ELEVATION_TOLERANCE_M = 1.0

LIST_SEPARATOR = "%20"
SERVER_EXCEPTION_MARKER = "Exception"

NORMALS_API = "BioSimNormals"
GENERATOR_API = "BioSimWG"
MODEL_API = "BioSimModel"
MODEL_LIST_API = "BioSimModelList"
CLEANUP_API = "BioSimMemoryCleanUp"
MEMORY_LOAD_API = "BioSimMemoryLoad"
MAX_MEMORY_API = "BioSimMaxMemory"

LOGGER = logging.getLogger("biosim.climate_client")

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True, eq=False)
class QuerySignature:
    """Identifies climate already generated on the server for one location.

    Coordinates compare within a tolerance, so the hash only covers the exact
    fields. Tolerance equality is not transitive; requests for the same place
    reuse the same coordinates in practice.
    """

    year_from: int
    year_to: int
    rcp: RCP
    climate_model: ClimateModel
    replicates: int
    force_from_normals: bool
    latitude_deg: float
    longitude_deg: float
    elevation_m: float
    nb_neighbours: int | None = None

    @classmethod
    def for_location(
        cls,
        location: Location,
        year_from: int,
        year_to: int,
        rcp: RCP | None = None,
        climate_model: ClimateModel | None = None,
        replicates: int = 1,
        force_from_normals: bool = False,
        nb_neighbours: int | None = None,
    ) -> "QuerySignature":
        return cls(
            year_from=int(year_from),
            year_to=int(year_to),
            rcp=rcp if rcp is not None else RCP.RCP45,
            climate_model=climate_model if climate_model is not None else ClimateModel.RCM4,
            replicates=int(replicates),
            force_from_normals=bool(force_from_normals),
            latitude_deg=float(location.latitude_deg),
            longitude_deg=float(location.longitude_deg),
            elevation_m=float(location.elevation_m),
            nb_neighbours=nb_neighbours,
        )

    def _exact_fields(self) -> Tuple[object, ...]:
        return (
            self.year_from,
            self.year_to,
            self.rcp,
            self.climate_model,
            self.replicates,
            self.force_from_normals,
            self.nb_neighbours,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QuerySignature):
            return NotImplemented
        if self._exact_fields() != other._exact_fields():
            return False
        if abs(self.latitude_deg - other.latitude_deg) >= LATITUDE_TOLERANCE_DEG:
            return False
        if abs(self.longitude_deg - other.longitude_deg) >= LONGITUDE_TOLERANCE_DEG:
            return False
        if math.isnan(self.elevation_m) or math.isnan(other.elevation_m):
            return math.isnan(self.elevation_m) and math.isnan(other.elevation_m)
        return abs(self.elevation_m - other.elevation_m) < ELEVATION_TOLERANCE_M

    def __hash__(self) -> int:
        return hash(self._exact_fields())


class HandleCache:
    """Bidirectional signature <-> handle map shared by generation workers."""

    def __init__(self) -> None:
        self._forward: Dict[QuerySignature, str] = {}
        self._backward: Dict[str, QuerySignature] = {}
        self._guard = threading.Lock()

    def lookup(self, signature: QuerySignature) -> str | None:
        with self._guard:
            return self._forward.get(signature)

    def insert(self, signature: QuerySignature, handle: str) -> str | None:
        """Link ``signature`` to ``handle`` and return the handle it displaced, if any.

        A displaced handle is no longer tracked; the caller owns its release.
        """
        with self._guard:
            return self._link(signature, handle)

    def insert_if_absent(self, signature: QuerySignature, handle: str) -> str:
        """Link the pair unless ``signature`` is already cached; return the cached handle."""
        with self._guard:
            existing = self._forward.get(signature)
            if existing is not None:
                return existing
            self._link(signature, handle)
            return handle

    def _link(self, signature: QuerySignature, handle: str) -> str | None:
        previous_handle = self._forward.pop(signature, None)
        if previous_handle is not None:
            self._backward.pop(previous_handle, None)
        stale_signature = self._backward.pop(handle, None)
        if stale_signature is not None:
            self._forward.pop(stale_signature, None)
        self._forward[signature] = handle
        self._backward[handle] = signature
        if previous_handle == handle:
            return None
        return previous_handle

    def evict_by_handle(self, handle: str) -> bool:
        with self._guard:
            signature = self._backward.pop(handle, None)
            if signature is None:
                return False
            self._forward.pop(signature, None)
            return True

    def handles(self) -> List[str]:
        with self._guard:
            return list(self._backward.keys())

    def clear(self) -> None:
        with self._guard:
            self._forward.clear()
            self._backward.clear()

    def __len__(self) -> int:
        with self._guard:
            return len(self._forward)

    def __contains__(self, signature: object) -> bool:
        with self._guard:
            return signature in self._forward


class BioSimTransport:
    """Plain GET access to the BioSIM server endpoints."""

    def __init__(self, base_url: str = BIOSIM_BASE_URL, timeout: float = BIOSIM_TIMEOUT_SECONDS) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def url_for(self, endpoint: str, query: str | None = None) -> str:
        url = f"{self.base_url}/{endpoint}"
        if query:
            url = f"{url}?{query}"
        return url

    def fetch(self, endpoint: str, query: str | None = None) -> str:
        url = self.url_for(endpoint, query)
        LOGGER.debug("GET %s", url)
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ConnectivityError(f"Unable to reach BioSIM server at {self.base_url}: {exc}") from exc
        if response.status_code < 200 or response.status_code > 202:
            raise ConnectivityError(
                f"Unable to connect to BioSIM server: {endpoint} answered with HTTP {response.status_code}"
            )
        body = response.text.replace("\r\n", "\n").rstrip("\n")
        if body.startswith(SERVER_EXCEPTION_MARKER):
            raise ServerError(body)
        return body


def _format_coordinate(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    return repr(value)


def build_coordinates_query(locations: Sequence[Location]) -> str:
    lat = LIST_SEPARATOR.join(_format_coordinate(loc.latitude_deg) for loc in locations)
    lon = LIST_SEPARATOR.join(_format_coordinate(loc.longitude_deg) for loc in locations)
    elev = LIST_SEPARATOR.join(_format_coordinate(loc.elevation_m) for loc in locations)
    query = f"lat={lat}&long={lon}"
    if elev:
        query += f"&elev={elev}"
    return query


def build_variables_query() -> str:
    return "var=" + LIST_SEPARATOR.join(VARIABLES.keys())


def format_model_parameters(parameters: Dict[str, object] | None) -> str | None:
    if not parameters:
        return None
    parts = []
    for key, value in parameters.items():
        if value is not None and (isinstance(value, bool) or not isinstance(value, (str, int, float))):
            raise ValidationError(f"Model parameter {key!r} must be a string or a number, got {type(value).__name__}")
        value_text = "" if value is None else str(value).strip()
        parts.append(f"*{str(key).strip()}:{value_text}")
    return "Parameters=" + "".join(parts)


def _validate_nb_neighbours(nb_neighbours: int | None) -> None:
    if nb_neighbours is None:
        return
    if not 1 <= int(nb_neighbours) <= MAX_NB_NEIGHBOURS:
        raise ValidationError(f"nb_neighbours must be between 1 and {MAX_NB_NEIGHBOURS}, got {nb_neighbours}")


def _scenario_query(rcp: RCP | None, climate_model: ClimateModel | None) -> str:
    query = ""
    if rcp is not None:
        query += f"&rcp={rcp.url_string}"
    if climate_model is not None:
        query += f"&climMod={climate_model.name}"
    return query


class BatchScheduler:
    """Capacity-bounded chunking with optional fan-out on a worker pool."""

    def __init__(
        self,
        max_workers: int = GENERATION_WORKERS,
        parallel_min_items: int = PARALLEL_MIN_LOCATIONS,
    ) -> None:
        self.max_workers = max(1, int(max_workers))
        self.parallel_min_items = max(1, int(parallel_min_items))
        self._executor: ThreadPoolExecutor | None = None
        self._executor_guard = threading.Lock()

    @staticmethod
    def chunk(items: Sequence[T], capacity: int) -> List[List[T]]:
        if capacity < 1:
            raise ValueError(f"Chunk capacity must be positive, got {capacity}")
        return [list(items[start:start + capacity]) for start in range(0, len(items), capacity)]

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_guard:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="biosim-generation",
                )
            return self._executor

    def run(
        self,
        items: Sequence[T],
        capacity: int,
        operation: Callable[[List[T]], List[R]],
        parallel: bool = False,
        ceiling: int | None = None,
    ) -> List[R]:
        if ceiling is not None and len(items) > ceiling:
            raise ValidationError(f"The maximum number of locations for a single request is {ceiling}")
        chunks = self.chunk(items, capacity)
        if not chunks:
            return []

        if not parallel or len(chunks) == 1 or len(items) < self.parallel_min_items:
            results: List[R] = []
            for chunk in chunks:
                results.extend(operation(chunk))
            return results

        LOGGER.debug("Dispatching %d chunks to %d workers", len(chunks), self.max_workers)
        executor = self._get_executor()
        futures: List[Future] = [executor.submit(operation, chunk) for chunk in chunks]
        wait(futures)
        merged: List[R] = []
        first_error: BaseException | None = None
        for index, future in enumerate(futures):
            error = future.exception()
            if error is not None:
                LOGGER.warning("Chunk %d/%d failed: %s", index + 1, len(futures), error)
                if first_error is None:
                    first_error = error
                continue
            merged.extend(future.result())
        if first_error is not None:
            raise first_error
        return merged

    def shutdown(self) -> None:
        with self._executor_guard:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None


class ClimateOrchestrator:
    """Caching access layer to BioSIM climate generation, normals and models.

    One instance owns its handle cache and worker pool. Call ``close`` (or use
    it as a context manager) to release the handles it keeps on the server.
    """

    def __init__(
        self,
        transport: BioSimTransport | None = None,
        handle_cache: HandleCache | None = None,
        scheduler: BatchScheduler | None = None,
        multithreading: bool = True,
    ) -> None:
        self.transport = transport if transport is not None else BioSimTransport()
        self.handle_cache = handle_cache if handle_cache is not None else HandleCache()
        self.scheduler = scheduler if scheduler is not None else BatchScheduler()
        self.multithreading = multithreading
        self._max_locations_per_request: int | None = None
        self._limits_guard = threading.Lock()
        self._model_list: List[str] | None = None
        self._model_list_guard = threading.Lock()
        self._closed = False

    def __enter__(self) -> "ClimateOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.clear_cache()
        except Exception:
            LOGGER.exception("Failed to release %d cached climate handles on close", len(self.handle_cache))
        finally:
            self.scheduler.shutdown()
        LOGGER.info("Climate orchestrator closed")

    def max_locations_per_request(self) -> int:
        with self._limits_guard:
            if self._max_locations_per_request is None:
                try:
                    max_memory = self._fetch_int(MAX_MEMORY_API)
                    self._max_locations_per_request = int(max_memory * REQUEST_CEILING_SHARE_OF_SERVER_MEMORY)
                except Exception as exc:
                    LOGGER.warning(
                        "Could not discover the server request ceiling, using %d: %s",
                        FALLBACK_MAX_LOCATIONS_PER_REQUEST,
                        exc,
                    )
                    self._max_locations_per_request = FALLBACK_MAX_LOCATIONS_PER_REQUEST
            return self._max_locations_per_request

    def server_memory_load(self) -> int:
        return self._fetch_int(MEMORY_LOAD_API)

    def _fetch_int(self, endpoint: str) -> int:
        reply = self.transport.fetch(endpoint, None)
        try:
            return int(reply.strip())
        except ValueError as exc:
            raise DecodeError(f"The server reply could not be parsed: {reply!r}") from exc

    def get_model_list(self) -> List[str]:
        with self._model_list_guard:
            if self._model_list is None:
                reply = self.transport.fetch(MODEL_LIST_API, None)
                self._model_list = [line.strip() for line in reply.split("\n") if line.strip()]
                LOGGER.info("Fetched %d model names from BioSIM", len(self._model_list))
            return list(self._model_list)

    def clear_cache(self) -> None:
        handles = self.handle_cache.handles()
        if handles:
            self.release_handles(handles)

    def release_handles(self, handles: Iterable[str]) -> None:
        handle_list = [h for h in handles if h]
        self.scheduler.run(handle_list, MAX_HANDLES_PER_BATCH_RELEASE, self._release_batch)

    def _release_batch(self, handles: List[str]) -> List[str]:
        self.transport.fetch(CLEANUP_API, "ref=" + LIST_SEPARATOR.join(handles))
        for handle in handles:
            self.handle_cache.evict_by_handle(handle)
        LOGGER.debug("Released %d climate handles", len(handles))
        return handles

    def get_normals(
        self,
        period: Period,
        locations: Sequence[Location],
        rcp: RCP | None = None,
        climate_model: ClimateModel | None = None,
        months: Sequence[Month | int] | None = None,
        nb_neighbours: int | None = None,
    ) -> List[Dataset]:
        _validate_nb_neighbours(nb_neighbours)
        ceiling = self.max_locations_per_request()

        def _normals_batch(batch: List[Location]) -> List[Dataset]:
            return self._fetch_normals(period, batch, rcp, climate_model, months, nb_neighbours)

        return self.scheduler.run(list(locations), MAX_LOCATIONS_PER_BATCH_NORMALS, _normals_batch, ceiling=ceiling)

    def get_monthly_normals(
        self,
        period: Period,
        locations: Sequence[Location],
        rcp: RCP | None = None,
        climate_model: ClimateModel | None = None,
    ) -> List[Dataset]:
        return self.get_normals(period, locations, rcp, climate_model, months=None)

    def get_annual_normals(
        self,
        period: Period,
        locations: Sequence[Location],
        rcp: RCP | None = None,
        climate_model: ClimateModel | None = None,
    ) -> List[Dataset]:
        return self.get_normals(period, locations, rcp, climate_model, months=ALL_MONTHS)

    def _fetch_normals(
        self,
        period: Period,
        locations: List[Location],
        rcp: RCP | None,
        climate_model: ClimateModel | None,
        months: Sequence[Month | int] | None,
        nb_neighbours: int | None,
    ) -> List[Dataset]:
        query = build_coordinates_query(locations)
        query += "&" + build_variables_query()
        query += "&compress=0"
        query += "&" + period.query
        query += _scenario_query(rcp, climate_model)
        if nb_neighbours is not None:
            query += f"&nbNearestNeighbours={int(nb_neighbours)}"
        reply = self.transport.fetch(NORMALS_API, query)
        datasets = decode_tabular_reply(reply, MONTH_FIELD, len(locations))
        if months:
            return [aggregate_months(dataset, months) for dataset in datasets]
        for dataset in datasets:
            _keep_month_and_variable_fields(dataset)
        return datasets

    def generate_climate(
        self,
        year_from: int,
        year_to: int,
        locations: Sequence[Location],
        rcp: RCP | None = None,
        climate_model: ClimateModel | None = None,
        replicates: int = 1,
        force_from_normals: bool = False,
        nb_neighbours: int | None = None,
    ) -> List[str]:
        query = build_coordinates_query(locations)
        query += "&" + build_variables_query()
        query += "&compress=0"
        query += f"&from={int(year_from)}&to={int(year_to)}"
        query += _scenario_query(rcp, climate_model)
        if replicates > 1:
            query += f"&rep={int(replicates)}"
        if force_from_normals:
            query += "&source=FromNormals"
        if nb_neighbours is not None:
            query += f"&nbNearestNeighbours={int(nb_neighbours)}"
        reply = self.transport.fetch(GENERATOR_API, query)

        handles = reply.split()
        if len(handles) != len(locations):
            raise DecodeError(
                f"The number of climate handles ({len(handles)}) differs from the number of locations ({len(locations)})"
            )
        for location, handle in zip(locations, handles):
            if handle.lower().startswith("error"):
                raise ServerError(f"The server was unable to generate the climate for location {location}: {handle}")
        LOGGER.debug("Generated climate for %d locations years=%s-%s", len(locations), year_from, year_to)
        return handles

    def get_model_output(
        self,
        year_from: int,
        year_to: int,
        locations: Sequence[Location],
        model_name: str,
        rcp: RCP | None = None,
        climate_model: ClimateModel | None = None,
        replicates: int = 1,
        ephemeral: bool = False,
        force_from_normals: bool = False,
        nb_neighbours: int | None = None,
        parameters: Dict[str, object] | None = None,
    ) -> List[Dataset]:
        locations = list(locations)
        if replicates < 1:
            raise ValidationError("The replicates parameter should be equal to or greater than 1")
        if year_from > year_to:
            raise ValidationError(f"year_from ({year_from}) must not be greater than year_to ({year_to})")
        _validate_nb_neighbours(nb_neighbours)
        parameter_query = format_model_parameters(parameters)
        ceiling = self.max_locations_per_request()
        if len(locations) > ceiling:
            raise ValidationError(f"The maximum number of locations for a single request is {ceiling}")
        if model_name not in self.get_model_list():
            raise ValidationError(
                f"The model {model_name} is not a valid model. Please consult the list returned by get_model_list()"
            )

        signatures = [
            QuerySignature.for_location(
                location, year_from, year_to, rcp, climate_model, replicates, force_from_normals, nb_neighbours
            )
            for location in locations
        ]
        handles: List[str | None] = [None] * len(locations)
        to_generate: List[int] = []
        pending: Dict[QuerySignature, int] = {}
        repeats: List[Tuple[int, int]] = []
        for index, signature in enumerate(signatures):
            cached = None if ephemeral else self.handle_cache.lookup(signature)
            if cached is not None:
                handles[index] = cached
                continue
            first = pending.get(signature)
            if first is None:
                pending[signature] = index
                to_generate.append(index)
            else:
                repeats.append((index, first))
        LOGGER.debug(
            "Model %s request locations=%d cached=%d to_generate=%d ephemeral=%s",
            model_name,
            len(locations),
            len(locations) - len(to_generate),
            len(to_generate),
            ephemeral,
        )

        minted: List[Tuple[List[int], List[str]]] = []
        minted_guard = threading.Lock()
        superseded: List[str] = []

        def _generation_batch(batch: List[int]) -> List[str]:
            batch_handles = self.generate_climate(
                year_from,
                year_to,
                [locations[i] for i in batch],
                rcp,
                climate_model,
                replicates,
                force_from_normals,
                nb_neighbours,
            )
            with minted_guard:
                minted.append((batch, batch_handles))
            return batch_handles

        try:
            if to_generate:
                try:
                    self.scheduler.run(
                        to_generate,
                        MAX_LOCATIONS_PER_BATCH_GENERATION,
                        _generation_batch,
                        parallel=self.multithreading,
                    )
                finally:
                    # Chunks that succeeded are tracked even when another chunk failed.
                    for batch, batch_handles in minted:
                        for index, handle in zip(batch, batch_handles):
                            if ephemeral:
                                handles[index] = handle
                                continue
                            winner = self.handle_cache.insert_if_absent(signatures[index], handle)
                            handles[index] = winner
                            if winner != handle:
                                superseded.append(handle)
                for index, first in repeats:
                    handles[index] = handles[first]

            def _model_batch(batch: List[str]) -> List[Dataset]:
                return self._apply_model(model_name, batch, parameter_query)

            return self.scheduler.run([str(h) for h in handles], MAX_LOCATIONS_PER_BATCH_MODEL, _model_batch)
        finally:
            if ephemeral and minted:
                self._release_quietly([handle for _batch, batch_handles in minted for handle in batch_handles])
            elif superseded:
                LOGGER.debug("Releasing %d handles generated concurrently for cached signatures", len(superseded))
                self._release_quietly(superseded)

    def _apply_model(self, model_name: str, handles: List[str], parameter_query: str | None) -> List[Dataset]:
        query = f"model={model_name}&compress=0&wgout=" + LIST_SEPARATOR.join(handles)
        if parameter_query:
            query += "&" + parameter_query
        reply = self.transport.fetch(MODEL_API, query)
        return decode_tabular_reply(reply, "rep", len(handles))

    def _release_quietly(self, handles: List[str]) -> None:
        try:
            self.release_handles(handles)
        except Exception:
            LOGGER.exception("Failed to release %d ephemeral climate handles", len(handles))


def _keep_month_and_variable_fields(dataset: Dataset) -> None:
    names = dataset.field_names
    for j in range(len(names) - 1, -1, -1):
        if names[j].lower() == MONTH_FIELD or names[j] in VARIABLE_FIELD_NAMES:
            continue
        dataset.remove_field(j)
