"""Known static GTFS sources for Kraków and the Małopolska region."""

from typing import Optional

from pydantic import BaseModel, ConfigDict


class Source(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    url: str
    description: str = ""


class UnknownSourceError(KeyError):
    """Raised for a source id that is not in the registry."""

    def __init__(self, source_id: str, available: Optional[list[str]] = None):
        self.source_id = source_id
        available = ", ".join(available if available is not None else GTFS_SOURCES)
        super().__init__(f"Unknown GTFS source: {source_id}. Available sources: {available}")

    def __str__(self) -> str:
        return self.args[0]


# Iteration order is the resolver's search order
GTFS_SOURCES: dict[str, Source] = {
    "krakow1": Source(
        id="krakow1",
        name="Kraków Public Transit (buses)",
        url="https://gtfs.ztp.krakow.pl/GTFS_KRK_A.zip",
        description="Municipal Public Transport in Kraków",
    ),
    "krakow2": Source(
        id="krakow2",
        name="Kraków Public Transit (mobile)",
        url="https://gtfs.ztp.krakow.pl/GTFS_KRK_M.zip",
        description="Municipal Public Transport in Kraków",
    ),
    "krakow3": Source(
        id="krakow3",
        name="Kraków Public Transit (trams)",
        url="https://gtfs.ztp.krakow.pl/GTFS_KRK_T.zip",
        description="Municipal Public Transport in Kraków",
    ),
    "ald": Source(
        id="ald",
        name="Małopolska Regional Transit Autobusy",
        url="https://kolejemalopolskie.com.pl/rozklady_jazdy/ald-gtfs.zip",
        description="Regional bus services in Małopolska",
    ),
    "kml": Source(
        id="kml",
        name="Małopolska Regional Transit Koleje",
        url="https://kolejemalopolskie.com.pl/rozklady_jazdy/kml-ska-gtfs.zip",
        description="Regional train services in Małopolska",
    ),
}


def get_source(source_id: str, sources: dict[str, Source] = GTFS_SOURCES) -> Source:
    source = sources.get(source_id)
    if source is None:
        raise UnknownSourceError(source_id, list(sources))
    return source


def list_sources(sources: dict[str, Source] = GTFS_SOURCES) -> dict[str, dict]:
    return {source_id: source.model_dump() for source_id, source in sources.items()}
