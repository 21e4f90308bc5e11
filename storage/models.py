"""
Data models for stored location reports.

Records are serialized to clients with the storage column names, so the
message type goes out as ``_type`` even though the attribute is
``message_type``.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class LocationRecord(BaseModel):
    """
    A persisted location report.

    Attributes:
        id: Store-assigned identity, strictly increasing in commit order
        message_type: Client message type tag (``_type``), e.g. "location"
        lat: Latitude in degrees
        lon: Longitude in degrees
        tst: Report timestamp, seconds since epoch
        raw_json: The decoded report exactly as the client sent it
        created_at: Storage timestamp, seconds since epoch
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int
    message_type: str = Field(alias="_type")
    tid: Optional[str] = None
    lat: float
    lon: float
    acc: Optional[float] = None
    alt: Optional[float] = None
    batt: Optional[int] = None
    bs: Optional[int] = None
    conn: Optional[str] = None
    tst: int
    vac: Optional[float] = None
    vel: Optional[float] = None
    cog: Optional[float] = None
    rad: Optional[float] = None
    t: Optional[str] = None
    topic: Optional[str] = None
    device: Optional[str] = None
    raw_json: str
    created_at: int

    @classmethod
    def from_row(cls, row: Any) -> "LocationRecord":
        """Build a record from a ``sqlite3.Row`` (or any mapping of column names)."""
        return cls.model_validate(dict(row))

    def to_response(self) -> dict[str, Any]:
        """Serialize with storage column names for API responses."""
        return self.model_dump(by_alias=True)


class StoreStats(BaseModel):
    """Aggregate figures over the stored records, keyed by report timestamp."""

    model_config = ConfigDict(populate_by_name=True)

    total_records: int = Field(default=0, alias="totalRecords")
    oldest_record: Optional[int] = Field(default=None, alias="oldestRecord")
    newest_record: Optional[int] = Field(default=None, alias="newestRecord")

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)
