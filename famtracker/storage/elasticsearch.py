"""
Elasticsearch service for the FamTracker backend.

Owns the AsyncElasticsearch client, creates the indices with their
mappings, and wraps every data operation in a circuit breaker so that an
unreachable cluster fails fast with a retryable 503 instead of piling up
slow requests.
"""

import logging
from typing import Any, Dict, Optional

from elasticsearch import AsyncElasticsearch, NotFoundError

from famtracker.config.settings import Settings
from famtracker.errors.exceptions import AppException, circuit_open, elasticsearch_unavailable
from famtracker.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitOpenException
from famtracker.resilience.retry import RetryConfig, retry_async
from famtracker.telemetry.service import TelemetryService

logger = logging.getLogger(__name__)

POSITION_REPORTS_INDEX = "position_reports"
MEMBERSHIPS_INDEX = "memberships"
ROAD_SEGMENTS_INDEX = "road_segments"


def _position_reports_mapping() -> Dict[str, Any]:
    return {
        "properties": {
            "id": {"type": "keyword"},
            "user_id": {"type": "keyword"},
            "group_id": {"type": "keyword"},
            "latitude": {"type": "double"},
            "longitude": {"type": "double"},
            "location": {"type": "geo_point"},
            "speed": {"type": "double"},
            "heading": {"type": "float"},
            "accuracy": {"type": "float"},
            "altitude": {"type": "float"},
            "timestamp": {"type": "date"},
            "matched_road_id": {"type": "long"},
            "matched_road_name": {"type": "keyword"},
            "matched_speed_limit": {"type": "double"},
            "road_distance_m": {"type": "float"},
            "overspeed": {"type": "double"},
        }
    }


def _memberships_mapping() -> Dict[str, Any]:
    return {
        "properties": {
            "group_id": {"type": "keyword"},
            "user_id": {"type": "keyword"},
            "role": {"type": "keyword"},
            "is_visible": {"type": "boolean"},
            "joined_at": {"type": "date"},
        }
    }


def _road_segments_mapping() -> Dict[str, Any]:
    return {
        "properties": {
            "segment_id": {"type": "long"},
            "name": {
                "type": "text",
                "fields": {"keyword": {"type": "keyword"}}
            },
            "speed_limit": {"type": "double"},
            "geometry": {"type": "geo_shape"},
        }
    }


INDEX_MAPPINGS = {
    POSITION_REPORTS_INDEX: _position_reports_mapping,
    MEMBERSHIPS_INDEX: _memberships_mapping,
    ROAD_SEGMENTS_INDEX: _road_segments_mapping,
}


class ElasticsearchService:
    """
    Elasticsearch resource handle with circuit breaker protection.

    Created by the service container and passed explicitly to each
    repository; ``connect`` and ``close`` bracket its lifetime.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[AsyncElasticsearch] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        telemetry: Optional[TelemetryService] = None,
    ):
        self.settings = settings
        self.client = client
        self.telemetry = telemetry
        # 3 consecutive failures open the circuit for 30 seconds
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            name="elasticsearch",
            config=CircuitBreakerConfig(failure_threshold=3, recovery_timeout_seconds=30.0),
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def connect(self) -> None:
        """Create the client if needed and make sure the indices exist."""
        if self.client is None:
            self.client = AsyncElasticsearch(
                self.settings.elastic_endpoint,
                api_key=self.settings.elastic_api_key,
                verify_certs=True,
                request_timeout=self.settings.elastic_request_timeout_seconds,
            )

        await retry_async(
            self.setup_indices,
            config=RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=10.0),
            operation_name="elasticsearch.setup_indices",
        )
        logger.info(
            "Connected to Elasticsearch",
            extra={"extra_data": {"indices": list(INDEX_MAPPINGS)}}
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
            logger.info("Elasticsearch client closed")

    async def ping(self) -> bool:
        """Cheap liveness check used by the readiness probe. Never raises."""
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning(
                "Elasticsearch ping failed",
                extra={"extra_data": {"error": str(e)}}
            )
            return False

    async def setup_indices(self) -> None:
        """Create the indices with their mappings if they do not exist."""
        for index_name, mapping in INDEX_MAPPINGS.items():
            if await self.client.indices.exists(index=index_name):
                logger.debug(
                    "Index already exists",
                    extra={"extra_data": {"index": index_name}}
                )
                continue
            await self.client.indices.create(index=index_name, mappings=mapping())
            logger.info(
                "Created index",
                extra={"extra_data": {"index": index_name}}
            )

    def _handle_circuit_breaker_exception(self, exc: CircuitOpenException) -> AppException:
        retry_in = int(exc.retry_in_seconds) if exc.retry_in_seconds is not None else None
        return circuit_open(
            message="Position store temporarily unavailable",
            details={
                "circuit_name": exc.circuit_name,
                "time_until_retry_seconds": retry_in,
                "service": "elasticsearch",
            }
        )

    def _handle_elasticsearch_error(self, operation: str, error: Exception) -> AppException:
        logger.error(
            "Elasticsearch operation failed",
            extra={"extra_data": {
                "operation": operation,
                "error_type": type(error).__name__,
                "error": str(error),
            }}
        )
        return elasticsearch_unavailable(
            message=f"Database operation failed: {operation}",
            details={"operation": operation}
        )

    async def _execute(self, operation: str, func, *args, **kwargs) -> Any:
        if self.telemetry is None:
            return await self._guarded(operation, func, *args, **kwargs)
        with self.telemetry.create_external_service_span("elasticsearch", operation,
                                                         {"db.system": "elasticsearch"}):
            return await self._guarded(operation, func, *args, **kwargs)

    async def _guarded(self, operation: str, func, *args, **kwargs) -> Any:
        try:
            return await self._circuit_breaker.execute(func, *args, **kwargs)
        except CircuitOpenException as e:
            raise self._handle_circuit_breaker_exception(e) from e
        except AppException:
            raise
        except Exception as e:
            raise self._handle_elasticsearch_error(operation, e) from e

    async def index_document(
        self,
        index: str,
        doc_id: str,
        document: Dict[str, Any],
        refresh: Any = False,
    ) -> Dict[str, Any]:
        """Create or overwrite one document."""
        return await self._execute(
            f"index_document({index})",
            self.client.index,
            index=index,
            id=doc_id,
            document=document,
            refresh=refresh,
        )

    async def update_document(
        self,
        index: str,
        doc_id: str,
        partial: Dict[str, Any],
        refresh: Any = "wait_for",
    ) -> Dict[str, Any]:
        """Apply a partial update to an existing document."""
        return await self._execute(
            f"update_document({index})",
            self.client.update,
            index=index,
            id=doc_id,
            doc=partial,
            refresh=refresh,
        )

    async def get_document(self, index: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one document's source, or None when it does not exist."""
        async def _do_get():
            try:
                response = await self.client.get(index=index, id=doc_id)
            except NotFoundError:
                return None
            return response["_source"]

        return await self._execute(f"get_document({index})", _do_get)

    async def search_documents(self, index: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Run a search; ``body`` is the dict produced by QueryBuilder.build()."""
        response = await self._execute(
            f"search_documents({index})",
            self.client.search,
            index=index,
            **body,
        )
        # ObjectApiResponse wraps the decoded body
        return getattr(response, "body", response)
