"""
Roster Store

Roster entries and the "found" list live outside the polling core. The
controller reads both fresh at the start of every cycle; the found list is
appended to by FoundListSink when a submission is detected.
"""

import os
import json
import logging
import tempfile
import threading
from dataclasses import dataclass
from typing import Optional, Dict, List, Any, Set

logger = logging.getLogger(__name__)


@dataclass
class StudentEntry:
    """One roster record."""
    name: str = 'Unknown Student'
    url: Optional[str] = None
    legacy_gradebook: Optional[str] = None  # older rosters used a 'Gradebook' column
    days_out: Optional[int] = None
    grade: Optional[Any] = None
    sy_student_id: Optional[str] = None
    sortable_name: Optional[str] = None

    @property
    def gradebook_url(self) -> Optional[str]:
        return self.url or self.legacy_gradebook

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StudentEntry':
        days_out = data.get('daysOut', data.get('days_out'))
        if days_out is not None and days_out != '':
            try:
                days_out = int(days_out)
            except (TypeError, ValueError):
                days_out = None
        else:
            days_out = None

        return cls(
            name=data.get('name') or 'Unknown Student',
            url=data.get('url'),
            legacy_gradebook=data.get('Gradebook'),
            days_out=days_out,
            grade=data.get('grade'),
            sy_student_id=data.get('SyStudentId', data.get('sy_student_id')),
            sortable_name=data.get('sortable_name'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'name': self.name,
            'url': self.url,
            'daysOut': self.days_out,
            'grade': self.grade,
            'SyStudentId': self.sy_student_id,
            'sortable_name': self.sortable_name,
        }
        if self.legacy_gradebook:
            data['Gradebook'] = self.legacy_gradebook
        return data


def found_key(record: Dict[str, Any]) -> Optional[str]:
    """Key of a found-list record: its gradebook URL."""
    return record.get('url') or record.get('Gradebook')


class RosterStore:
    """Read/write contract the controller and sinks rely on."""

    def get_roster(self) -> List[StudentEntry]:
        raise NotImplementedError

    def get_found_keys(self) -> Set[str]:
        raise NotImplementedError

    def add_found(self, record: Dict[str, Any]):
        raise NotImplementedError


class InMemoryRosterStore(RosterStore):
    """Roster store held in process memory."""

    def __init__(self, entries: Optional[List[StudentEntry]] = None, found: Optional[List[Dict]] = None):
        self._lock = threading.Lock()
        self._entries = list(entries or [])
        self._found: Dict[str, Dict] = {}
        for record in found or []:
            key = found_key(record)
            if key:
                self._found[key] = record

    def set_roster(self, entries: List[StudentEntry]):
        with self._lock:
            self._entries = list(entries)

    def get_roster(self) -> List[StudentEntry]:
        with self._lock:
            return list(self._entries)

    def get_found_keys(self) -> Set[str]:
        with self._lock:
            return set(self._found)

    def get_found(self) -> List[Dict]:
        with self._lock:
            return list(self._found.values())

    def add_found(self, record: Dict[str, Any]):
        key = found_key(record)
        if not key:
            return
        with self._lock:
            self._found[key] = record

    def remove_found(self, key: str):
        with self._lock:
            self._found.pop(key, None)


class JsonRosterStore(RosterStore):
    """
    Roster store backed by a JSON document::

        {"masterEntries": [...], "foundEntries": [...]}

    Every read goes to disk so external edits (a student removed from the
    found list, new roster rows) are picked up at the next cycle.
    """

    MASTER_KEY = 'masterEntries'
    FOUND_KEY = 'foundEntries'

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, 'r') as f:
            return json.load(f) or {}

    def _save(self, data: Dict[str, Any]):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get_roster(self) -> List[StudentEntry]:
        with self._lock:
            data = self._load()
        return [StudentEntry.from_dict(e) for e in data.get(self.MASTER_KEY, [])]

    def get_found_keys(self) -> Set[str]:
        with self._lock:
            data = self._load()
        return {key for key in map(found_key, data.get(self.FOUND_KEY, [])) if key}

    def add_found(self, record: Dict[str, Any]):
        key = found_key(record)
        if not key:
            logger.warning(f"Not recording found student without URL: {record.get('name')}")
            return

        with self._lock:
            data = self._load()
            found = {found_key(e): e for e in data.get(self.FOUND_KEY, [])}
            found[key] = record
            data[self.FOUND_KEY] = list(found.values())
            self._save(data)
