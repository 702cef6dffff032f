# donor_intel/services/cosmos_store.py
import os
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from azure.cosmos import exceptions
from azure.cosmos.aio import ContainerProxy, CosmosClient

from donor_intel.errors import ConfigurationError, StoreError
from donor_intel.utils.coerce import to_optional_number

# ---- Env flags / knobs ----
AZURE_COSMOS_CONNECTION_STRING = os.getenv("AZURE_COSMOS_CONNECTION_STRING")
AZURE_COSMOS_DATABASE_NAME = os.getenv("AZURE_COSMOS_DATABASE_NAME", "DonorIntelDB")
AZURE_COSMOS_DONORS_CONTAINER_NAME = os.getenv("AZURE_COSMOS_DONORS_CONTAINER_NAME", "Donors")
AZURE_COSMOS_DONATIONS_CONTAINER_NAME = os.getenv("AZURE_COSMOS_DONATIONS_CONTAINER_NAME", "Donations")

DONOR_FIELDS = (
    "c.id, c.qb_customer_id, c.display_name, c.email, c.billing_address, "
    "c.total_lifetime_value, c.last_donation_date"
)


def _rank_by_lifetime_value(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Lifetime value desc, null/non-numeric last, then id asc. Ranked client-side:
    Cosmos ORDER BY puts string values above numbers.
    """
    def key(row: Dict[str, Any]) -> Tuple[int, float, str]:
        ltv = to_optional_number(row.get("total_lifetime_value"))
        return (1, 0.0, str(row.get("id"))) if ltv is None else (0, -ltv, str(row.get("id")))
    return sorted(rows, key=key)


class CosmosDonorStore:
    """
    Donor and donation lookups over two Cosmos DB containers.

    Donor documents carry org_id, display_name, email, billing_address, city,
    state, total_lifetime_value, last_donation_date and (optionally) embedding
    plus the embedding_text it was computed from. Donation documents carry
    donor_id, amount and date (YYYY-MM-DD).
    """

    def __init__(
        self,
        donors_container: ContainerProxy,
        donations_container: ContainerProxy,
        client: Optional[CosmosClient] = None,
    ):
        self.donors = donors_container
        self.donations = donations_container
        self._client = client

    @classmethod
    def from_env(cls) -> "CosmosDonorStore":
        if not AZURE_COSMOS_CONNECTION_STRING:
            raise ConfigurationError("Missing required environment variable: AZURE_COSMOS_CONNECTION_STRING")
        client = CosmosClient.from_connection_string(AZURE_COSMOS_CONNECTION_STRING)
        database = client.get_database_client(AZURE_COSMOS_DATABASE_NAME)
        return cls(
            database.get_container_client(AZURE_COSMOS_DONORS_CONTAINER_NAME),
            database.get_container_client(AZURE_COSMOS_DONATIONS_CONTAINER_NAME),
            client=client,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def __aenter__(self) -> "CosmosDonorStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --------- internals ---------
    async def _query(
        self,
        container: ContainerProxy,
        query: str,
        parameters: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        try:
            items = container.query_items(query=query, parameters=parameters or [])
            return [item async for item in items]
        except exceptions.CosmosHttpResponseError as e:
            logging.warning(f"[CosmosStore] query failed: {e}")
            raise StoreError(f"Cosmos query failed: {e}") from e

    # --------- donors ---------
    async def donor_ids_for_org(self, org_id: str) -> List[str]:
        rows = await self._query(
            self.donors,
            "SELECT VALUE c.id FROM c WHERE c.org_id = @org_id",
            [{"name": "@org_id", "value": org_id}],
        )
        return [str(r) for r in rows if r is not None]

    async def top_donors_by_lifetime_value(self, org_id: str, limit: int) -> List[Dict[str, Any]]:
        rows = await self._query(
            self.donors,
            "SELECT c.id, c.display_name, c.total_lifetime_value, c.last_donation_date "
            "FROM c WHERE c.org_id = @org_id",
            [{"name": "@org_id", "value": org_id}],
        )
        return _rank_by_lifetime_value(rows)[:limit]

    async def donors_by_ids(self, donor_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not donor_ids:
            return []
        return await self._query(
            self.donors,
            "SELECT c.id, c.display_name, c.last_donation_date FROM c "
            "WHERE ARRAY_CONTAINS(@ids, c.id)",
            [{"name": "@ids", "value": list(donor_ids)}],
        )

    async def lifetime_values_for_org(self, org_id: str) -> List[Any]:
        return await self._query(
            self.donors,
            "SELECT VALUE c.total_lifetime_value FROM c WHERE c.org_id = @org_id",
            [{"name": "@org_id", "value": org_id}],
        )

    async def get_donor(self, donor_id: str, org_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._query(
            self.donors,
            f"SELECT {DONOR_FIELDS}, c.org_id, c.city, c.state FROM c "
            "WHERE c.id = @id AND c.org_id = @org_id",
            [{"name": "@id", "value": donor_id}, {"name": "@org_id", "value": org_id}],
        )
        return rows[0] if rows else None

    async def match_donors(
        self, vector: Sequence[float], threshold: float, limit: int, org_id: str
    ) -> List[Dict[str, Any]]:
        """Nearest donors by cosine similarity; rows under `threshold` are dropped."""
        rows = await self._query(
            self.donors,
            f"SELECT TOP @limit {DONOR_FIELDS}, "
            "VectorDistance(c.embedding, @embedding) AS similarity "
            "FROM c WHERE c.org_id = @org_id AND IS_DEFINED(c.embedding) "
            "ORDER BY VectorDistance(c.embedding, @embedding)",
            [
                {"name": "@embedding", "value": list(vector)},
                {"name": "@org_id", "value": org_id},
                {"name": "@limit", "value": int(limit)},
            ],
        )
        return [r for r in rows if isinstance(r.get("similarity"), (int, float)) and r["similarity"] >= threshold]

    async def _find_like(self, field: str, term: str, org_id: str, limit: int) -> List[Dict[str, Any]]:
        rows = await self._query(
            self.donors,
            f"SELECT {DONOR_FIELDS} FROM c "
            f"WHERE c.org_id = @org_id AND CONTAINS(c.{field}, @term, true)",
            [
                {"name": "@org_id", "value": org_id},
                {"name": "@term", "value": term},
            ],
        )
        return _rank_by_lifetime_value(rows)[:limit]

    async def find_donors_by_name_like(self, term: str, org_id: str, limit: int) -> List[Dict[str, Any]]:
        return await self._find_like("display_name", term, org_id, limit)

    async def find_donors_by_email_like(self, term: str, org_id: str, limit: int) -> List[Dict[str, Any]]:
        return await self._find_like("email", term, org_id, limit)

    async def donors_for_embedding(self, org_id: str) -> List[Dict[str, Any]]:
        return await self._query(
            self.donors,
            "SELECT c.id, c.display_name, c.email, c.city, c.state, c.billing_address, "
            "c.total_lifetime_value, c.embedding_text, IS_DEFINED(c.embedding) AS has_embedding "
            "FROM c WHERE c.org_id = @org_id",
            [{"name": "@org_id", "value": org_id}],
        )

    async def set_donor_embedding(
        self, donor_id: str, org_id: str, vector: Sequence[float], text: str
    ) -> None:
        rows = await self._query(
            self.donors,
            "SELECT * FROM c WHERE c.id = @id AND c.org_id = @org_id",
            [{"name": "@id", "value": donor_id}, {"name": "@org_id", "value": org_id}],
        )
        if not rows:
            raise StoreError(f"Donor not found: {donor_id}")
        doc = rows[0]
        doc["embedding"] = list(vector)
        doc["embedding_text"] = text
        try:
            await self.donors.upsert_item(doc)
        except exceptions.CosmosHttpResponseError as e:
            raise StoreError(f"Embedding upsert failed id={donor_id}: {e}") from e

    # --------- donations ---------
    async def gifts_for_donors(
        self, donor_ids: Sequence[str], cutoff: str, until: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Donation rows for the given donors dated on/after `cutoff` (and before `until`, exclusive)."""
        if not donor_ids:
            return []
        query = (
            "SELECT c.donor_id, c.amount, c.date FROM c "
            "WHERE ARRAY_CONTAINS(@ids, c.donor_id) AND c.date >= @cutoff"
        )
        parameters = [
            {"name": "@ids", "value": list(donor_ids)},
            {"name": "@cutoff", "value": cutoff},
        ]
        if until:
            query += " AND c.date < @until"
            parameters.append({"name": "@until", "value": until})
        return await self._query(self.donations, query, parameters)
