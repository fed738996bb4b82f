from __future__ import annotations

from collections.abc import Iterable, Iterator
from functools import partial

from profilehub.services.domains.collectors.errors import UnknownCollectorError
from profilehub.services.domains.collectors.sources import HttpCandidateSource
from profilehub.services.domains.collectors.targets import (
    pending_enrichment_loader,
    static_institution_loader,
)
from profilehub.services.domains.collectors.types import CollectorDefinition
from profilehub.settings import Settings, parse_csv_list

SUCUPIRA = "sucupira"
BDTD = "bdtd"
UFMS = "ufms"
DISCOVERY = "discovery"


class CollectorRegistry:
    def __init__(self, definitions: Iterable[CollectorDefinition] = ()) -> None:
        self._definitions: dict[str, CollectorDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: CollectorDefinition) -> None:
        if definition.name in self._definitions:
            raise ValueError(f"Collector '{definition.name}' is already registered.")
        self._definitions[definition.name] = definition

    def get(self, name: str) -> CollectorDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise UnknownCollectorError(name)
        return definition

    def names(self) -> list[str]:
        return list(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __iter__(self) -> Iterator[CollectorDefinition]:
        return iter(self._definitions.values())


def _http_source_factory(app_settings: Settings, *, collector: str, source_tag: str, endpoint_url: str):
    return partial(
        HttpCandidateSource,
        collector=collector,
        source_tag=source_tag,
        endpoint_url=endpoint_url,
        timeout_seconds=app_settings.source_http_timeout_seconds,
        attempts=app_settings.source_http_attempts,
        user_agent=app_settings.source_http_user_agent,
    )


def build_default_registry(app_settings: Settings) -> CollectorRegistry:
    institutions = parse_csv_list(app_settings.collector_institutions)
    institution_loader = static_institution_loader(institutions)
    return CollectorRegistry(
        [
            CollectorDefinition(
                name=SUCUPIRA,
                source="sucupira",
                description="CAPES Sucupira open-data API",
                interval_minutes=app_settings.sucupira_interval_minutes,
                load_targets=institution_loader,
                source_factory=_http_source_factory(
                    app_settings,
                    collector=SUCUPIRA,
                    source_tag="sucupira",
                    endpoint_url=app_settings.sucupira_endpoint_url,
                ),
                inter_target_delay_seconds=app_settings.collector_inter_target_delay_seconds,
            ),
            CollectorDefinition(
                name=BDTD,
                source="bdtd",
                description="Brazilian digital library of theses and dissertations",
                interval_minutes=app_settings.bdtd_interval_minutes,
                load_targets=institution_loader,
                source_factory=_http_source_factory(
                    app_settings,
                    collector=BDTD,
                    source_tag="bdtd",
                    endpoint_url=app_settings.bdtd_endpoint_url,
                ),
                inter_target_delay_seconds=app_settings.collector_inter_target_delay_seconds,
            ),
            CollectorDefinition(
                name=UFMS,
                source="ufms",
                description="UFMS institutional repository",
                interval_minutes=app_settings.ufms_interval_minutes,
                load_targets=institution_loader,
                source_factory=_http_source_factory(
                    app_settings,
                    collector=UFMS,
                    source_tag="ufms",
                    endpoint_url=app_settings.ufms_endpoint_url,
                ),
                inter_target_delay_seconds=app_settings.collector_inter_target_delay_seconds,
            ),
            CollectorDefinition(
                name=DISCOVERY,
                source="discovery",
                description="AI-assisted professional profile discovery",
                interval_minutes=app_settings.discovery_interval_minutes,
                load_targets=pending_enrichment_loader(batch_size=app_settings.discovery_batch_size),
                source_factory=_http_source_factory(
                    app_settings,
                    collector=DISCOVERY,
                    source_tag="discovery",
                    endpoint_url=app_settings.discovery_endpoint_url,
                ),
                inter_target_delay_seconds=app_settings.discovery_inter_target_delay_seconds,
                enrichment_allowed=True,
            ),
        ]
    )
