import unittest
from unittest.mock import patch

try:
    import app as app_module
    from climate_data import ConnectivityError, ServerError, ValidationError, decode_tabular_reply
except ModuleNotFoundError:
    app_module = None


_MONTHLY_BLOCK = "Month,TMIN_MN,TMAX_MN,PRCP_TT\n1,-10,-2,50\n2,-8,0,40"


class _FakeHandleCache:
    def __len__(self):
        return 3


class _FakeClient:
    handle_cache = _FakeHandleCache()

    def __init__(self) -> None:
        self.normals_calls = []
        self.model_calls = []
        self.closed = False

    def get_model_list(self):
        return ["DegreeDay_Annual"]

    def get_normals(self, period, locations, rcp=None, climate_model=None, months=None):
        self.normals_calls.append({"period": period, "locations": locations, "rcp": rcp, "months": months})
        return decode_tabular_reply("\n".join([_MONTHLY_BLOCK] * len(locations)), "month", len(locations))

    def get_model_output(self, from_year, to_year, locations, model, **kwargs):
        self.model_calls.append({"model": model, "locations": locations, **kwargs})
        reply = "\n".join(f"Rep,Year,DD\n1,{from_year},{10 * i}" for i in range(len(locations)))
        return decode_tabular_reply(reply, "rep", len(locations))

    def close(self):
        self.closed = True


class _FailingClient(_FakeClient):
    def __init__(self, error) -> None:
        super().__init__()
        self.error = error

    def get_model_output(self, from_year, to_year, locations, model, **kwargs):
        raise self.error

    def get_model_list(self):
        raise self.error


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def _normals(self, **overrides):
        params = {
            "period": "1981_2010",
            "lat": "46.0,47.5",
            "lon": "-71.0,-72.0",
            "elev": None,
            "rcp": None,
            "climate_model": None,
            "months": None,
        }
        params.update(overrides)
        return app_module.normals(**params)

    def _model_output(self, **overrides):
        params = {
            "model": "DegreeDay_Annual",
            "from_year": 2000,
            "to_year": 2005,
            "lat": "46.0",
            "lon": "-71.0",
            "elev": "120",
            "rcp": None,
            "climate_model": None,
            "replicates": 1,
            "ephemeral": False,
        }
        params.update(overrides)
        return app_module.model_output(**params)

    def test_models_endpoint(self):
        with patch.object(app_module, "client", _FakeClient()):
            payload = app_module.models()
        self.assertEqual(payload, {"models": ["DegreeDay_Annual"]})

    def test_normals_payload_per_location(self):
        fake_client = _FakeClient()
        with patch.object(app_module, "client", fake_client):
            payload = self._normals(months="1,2", rcp="RCP85")
        self.assertEqual(len(payload["results"]), 2)
        self.assertEqual(payload["months"], [1, 2])
        first = payload["results"][0]
        self.assertEqual(first["location"], {"lat": 46.0, "lon": -71.0, "elev": None})
        self.assertEqual(first["types"], ["integer", "real", "real", "real"])
        call = fake_client.normals_calls[0]
        self.assertEqual(call["rcp"].name, "RCP85")
        self.assertEqual([int(m) for m in call["months"]], [1, 2])

    def test_normals_rejects_mismatched_coordinates(self):
        with patch.object(app_module, "client", _FakeClient()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                self._normals(lon="-71.0")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_normals_rejects_unknown_period(self):
        with patch.object(app_module, "client", _FakeClient()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                self._normals(period="1900_1930")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_model_output_forwards_options(self):
        fake_client = _FakeClient()
        with patch.object(app_module, "client", fake_client):
            payload = self._model_output(ephemeral=True, replicates=2, climate_model="GCM4")
        self.assertEqual(payload["results"][0]["records"], [[1, 2000, 0]])
        call = fake_client.model_calls[0]
        self.assertTrue(call["ephemeral"])
        self.assertEqual(call["replicates"], 2)
        self.assertEqual(call["climate_model"].name, "GCM4")
        self.assertEqual(call["locations"][0].elevation_m, 120.0)

    def test_error_kinds_map_to_status_codes(self):
        cases = [
            (ValidationError("bad"), 400),
            (ServerError("rejected"), 502),
            (ConnectivityError("down"), 503),
        ]
        for error, status in cases:
            with patch.object(app_module, "client", _FailingClient(error)):
                with self.assertRaises(app_module.HTTPException) as ctx:
                    self._model_output()
            self.assertEqual(ctx.exception.status_code, status)

    def test_models_endpoint_maps_connectivity_error(self):
        with patch.object(app_module, "client", _FailingClient(ConnectivityError("down"))):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.models()
        self.assertEqual(ctx.exception.status_code, 503)

    def test_shutdown_closes_client(self):
        fake_client = _FakeClient()
        with patch.object(app_module, "client", fake_client):
            app_module._shutdown()
        self.assertTrue(fake_client.closed)

    def test_health(self):
        with patch.object(app_module, "client", _FakeClient()):
            self.assertEqual(app_module.health(), {"status": "ok", "cached_handles": 3})


if __name__ == "__main__":
    unittest.main()
