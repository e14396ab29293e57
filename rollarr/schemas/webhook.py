"""
Webhook payload schemas.

Sonarr and Radarr post different bodies to the same kind of endpoint. The
payload is modelled as a tagged union: the tag is derived from the body
(test event, ``movie`` present, otherwise series) and pydantic picks the
matching model.
"""
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Tag, TypeAdapter

TEST_EVENT = "Test"
DOWNLOAD_EVENT = "Download"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class SonarrEpisode(_Payload):
    episodeNumber: int
    seasonNumber: int
    title: str = ""
    overview: Optional[str] = None
    airDateUtc: Optional[str] = None
    id: Optional[int] = None


class SonarrSeriesRef(_Payload):
    id: Optional[int] = None
    title: str = ""
    tvdbId: Optional[int] = None
    imdbId: Optional[str] = None


class RadarrMovieRef(_Payload):
    id: Optional[int] = None
    title: str = ""
    tmdbId: Optional[int] = None
    imdbId: Optional[str] = None


class ConnectionTestPayload(_Payload):
    kind: Literal["test"] = "test"
    eventType: Literal["Test"] = TEST_EVENT
    instanceName: str = ""


class SonarrWebhookPayload(_Payload):
    kind: Literal["series"] = "series"
    eventType: Optional[str] = None
    instanceName: str = ""
    series: Optional[SonarrSeriesRef] = None
    episodes: Optional[List[SonarrEpisode]] = None
    episodeFile: Optional[dict] = None
    episodeFiles: Optional[List[dict]] = None
    isUpgrade: bool = False

    @property
    def has_file_info(self) -> bool:
        return bool(self.episodeFile) or bool(self.episodeFiles)


class RadarrWebhookPayload(_Payload):
    kind: Literal["movie"] = "movie"
    eventType: Optional[str] = None
    instanceName: str = ""
    movie: RadarrMovieRef
    movieFile: Optional[dict] = None
    isUpgrade: bool = False


def _payload_kind(value: Any) -> str:
    if isinstance(value, dict):
        if value.get("eventType") == TEST_EVENT:
            return "test"
        if value.get("movie") is not None:
            return "movie"
        return "series"
    return getattr(value, "kind", "series")


WebhookPayload = Annotated[
    Union[
        Annotated[ConnectionTestPayload, Tag("test")],
        Annotated[SonarrWebhookPayload, Tag("series")],
        Annotated[RadarrWebhookPayload, Tag("movie")],
    ],
    Discriminator(_payload_kind),
]

_payload_adapter = TypeAdapter(WebhookPayload)


def parse_webhook_payload(data: dict) -> Union[ConnectionTestPayload, SonarrWebhookPayload, RadarrWebhookPayload]:
    """Validate a raw webhook body into its tagged payload model (raises pydantic.ValidationError)"""
    return _payload_adapter.validate_python(data)
