"""HTTP client for a remote NextGIS Web vector layer resource.

RemoteLayerClient wraps an httpx.Client and exposes one method per remote
endpoint. Every method raises from replica.core.errors instead of returning
error values:

* NetworkUnavailable when the network probe reports no connectivity, before
  any request is made;
* TransportFailure on a request error or any status other than 200;
* MalformedResponse when the body is not the expected JSON.

No request is retried here; a failed change stays queued for the next
externally triggered sync.

Example:
    Fetch the schema of resource 42:
        >>> with RemoteLayerClient("https://demo.nextgis.com", 42) as client:
        ...     meta = client.get_metadata()
"""

from __future__ import annotations

import datetime
import logging
from typing import TYPE_CHECKING, Any

import httpx

from replica.core import errors
from replica.db import models as db_models
from replica.utils import geometry as geometry_utils

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)


def resource_meta_url(base: str, remote_id: int) -> str:
    return f"{base.rstrip('/')}/api/resource/{remote_id}"


def features_url(base: str, remote_id: int) -> str:
    return f"{base.rstrip('/')}/api/resource/{remote_id}/feature/"


def vector_data_url(base: str, remote_id: int) -> str:
    return f"{base.rstrip('/')}/resource/{remote_id}/store/"


def feature_url(base: str, remote_id: int, feature_id: int) -> str:
    return f"{features_url(base, remote_id)}{feature_id}"


def attachment_url(base: str, remote_id: int, feature_id: int) -> str:
    return f"{feature_url(base, remote_id, feature_id)}/attachment/"


def _encode_value(value: Any, field_type: db_models.FieldType) -> Any:
    if value is None:
        return None
    if field_type == db_models.FieldType.REAL:
        return float(value)
    if field_type == db_models.FieldType.INTEGER:
        return int(value)
    if field_type == db_models.FieldType.DATETIME:
        if isinstance(value, datetime.datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=datetime.UTC)
            return int(value.timestamp() * 1000)
        return int(value)
    return str(value)


def feature_payload(
    feature: db_models.Feature,
    fields: Iterable[db_models.Field],
    target_srid: int = db_models.CRS_WEB_MERCATOR,
    with_z: bool = False,
) -> dict[str, Any]:
    """Build the ``{fields, geom}`` body of a create or update request.

    Attributes missing from the schema are not sent. The geometry is
    reprojected to the layer's declared coordinate system and written as
    2D WKT unless with_z is set. Date-time values go out as epoch
    milliseconds.
    """
    values = {
        field.name: _encode_value(feature.attributes.get(field.name), field.type)
        for field in fields
        if field.name in feature.attributes
    }
    geometry = geometry_utils.reproject(feature.geometry, feature.srid, target_srid)
    return {"fields": values, "geom": geometry_utils.to_wkt(geometry, with_z)}


class RemoteLayerClient:
    """Synchronous client of one remote layer resource.

    Attributes:
        base_url: Server root, e.g. ``https://demo.nextgis.com``.
        remote_id: Resource id of the vector layer.
    """

    def __init__(
        self,
        base_url: str,
        remote_id: int,
        login: str = "",
        password: str = "",
        timeout: float = 30.0,
        network_available: Callable[[], bool] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.remote_id = remote_id
        self._network_available = network_available or (lambda: True)
        auth = httpx.BasicAuth(login, password) if login and password else None
        self._client = httpx.Client(
            auth=auth,
            timeout=timeout,
            headers={"Accept": "*/*"},
            transport=transport,
        )

    def __enter__(self) -> RemoteLayerClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def is_network_available(self) -> bool:
        return self._network_available()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if not self._network_available():
            raise errors.NetworkUnavailable()

        logger.debug("%s %s", method, url)
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise errors.TransportFailure(f"{method} {url}: {exc}") from exc

        if response.status_code != 200:
            logger.warning(
                "%s %s answered HTTP %s", method, url, response.status_code
            )
            raise errors.TransportFailure(
                f"{method} {url}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise errors.MalformedResponse(
                f"Invalid JSON from {response.request.url}: {exc}"
            ) from exc

    def _json_list(self, url: str) -> list[dict[str, Any]]:
        data = self._json(self._request("GET", url))
        if not isinstance(data, list) or not all(
            isinstance(item, dict) for item in data
        ):
            raise errors.MalformedResponse(f"Expected a feature array from {url}")
        return data

    def get_metadata(self) -> dict[str, Any]:
        url = resource_meta_url(self.base_url, self.remote_id)
        data = self._json(self._request("GET", url))
        if not isinstance(data, dict):
            raise errors.MalformedResponse(f"Expected an object from {url}")
        return data

    def get_features(self) -> list[dict[str, Any]]:
        return self._json_list(features_url(self.base_url, self.remote_id))

    def get_vector_data(self) -> list[dict[str, Any]]:
        return self._json_list(vector_data_url(self.base_url, self.remote_id))

    def create_feature(self, payload: dict[str, Any]) -> int | None:
        """POST a new feature and return the id assigned by the server."""
        url = vector_data_url(self.base_url, self.remote_id)
        data = self._json(self._request("POST", url, json=payload))
        if isinstance(data, dict) and "id" in data:
            try:
                return int(data["id"])
            except (TypeError, ValueError) as exc:
                raise errors.MalformedResponse(f"Bad feature id {data['id']!r}") from exc
        return None

    def update_feature(self, feature_id: int, payload: dict[str, Any]) -> None:
        url = feature_url(self.base_url, self.remote_id, feature_id)
        self._request("PUT", url, json=payload)

    def delete_feature(self, feature_id: int) -> None:
        url = feature_url(self.base_url, self.remote_id, feature_id)
        self._request("DELETE", url)

    def upload_attachment(self, feature_id: int, path: pathlib.Path) -> None:
        url = attachment_url(self.base_url, self.remote_id, feature_id)
        with path.open("rb") as stream:
            self._request("PUT", url, files={"file": (path.name, stream)})

    def delete_attachment(self, feature_id: int, name: str) -> None:
        url = attachment_url(self.base_url, self.remote_id, feature_id) + name
        self._request("DELETE", url)
