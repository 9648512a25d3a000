from __future__ import annotations

from collections import Counter
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from .errors import DuplicateJob
from .models import JobDescriptor


class JobDescriptorStore:
    """Read-only collection of the job definitions for one run, keyed by id."""

    def __init__(self, descriptors: Iterable[JobDescriptor]):
        descriptors = list(descriptors)
        counts = Counter(d.id for d in descriptors)
        dupes = [jid for jid, n in counts.items() if n > 1]
        if dupes:
            raise DuplicateJob(dupes)

        by_id: Dict[str, JobDescriptor] = {d.id: d for d in descriptors}
        self._by_id: Mapping[str, JobDescriptor] = MappingProxyType(by_id)
        self._ids: List[str] = sorted(by_id)

    def __getitem__(self, job_id: str) -> JobDescriptor:
        return self._by_id[job_id]

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._by_id

    def __iter__(self) -> Iterator[JobDescriptor]:
        return (self._by_id[jid] for jid in self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def get(self, job_id: str) -> Optional[JobDescriptor]:
        return self._by_id.get(job_id)

    def ids(self) -> List[str]:
        """All job ids in ascending order."""
        return list(self._ids)
