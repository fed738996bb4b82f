from profilehub.services.domains.merge.application import (
    apply_candidate as apply_candidate,
)
from profilehub.services.domains.merge.application import (
    merge_record as merge_record,
)
from profilehub.services.domains.merge.application import (
    upsert_publication as upsert_publication,
)
from profilehub.services.domains.merge.application import (
    upsert_researcher as upsert_researcher,
)
from profilehub.services.domains.merge.application import (
    upsert_researcher_with_publication as upsert_researcher_with_publication,
)
from profilehub.services.domains.merge.enrichment import (
    apply_enrichment as apply_enrichment,
)
from profilehub.services.domains.merge.enrichment import (
    guess_sector as guess_sector,
)
from profilehub.services.domains.merge.enrichment import (
    list_pending_enrichment as list_pending_enrichment,
)
from profilehub.services.domains.merge.types import (
    MergeOutcome as MergeOutcome,
)
from profilehub.services.domains.merge.types import (
    Provenance as Provenance,
)
from profilehub.services.domains.merge.types import (
    PublicationCandidate as PublicationCandidate,
)
from profilehub.services.domains.merge.types import (
    RecordCandidate as RecordCandidate,
)
from profilehub.services.domains.merge.types import (
    ResearcherCandidate as ResearcherCandidate,
)
