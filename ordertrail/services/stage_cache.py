"""
Local read cache of service-order views.

Two kinds of view are held: named list views (each a list of row dicts keyed
by "id") and detail records keyed by entity id. Readers always receive deep
copies, so the only way to change cached data is through this class.

A stale list view keeps serving its rows until set_list replaces it
(stale-while-revalidate).
"""
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

ID_FIELD = "id"
STAGE_FIELD = "stage_id"
FUNNEL_FIELD = "funnel_id"


@dataclass(frozen=True)
class CacheSnapshot:
    """
    Verbatim copy of every cached view of one entity.

    rows maps list key -> ((position, row), ...) for each row of the entity.
    detail is None when no detail record was cached.
    """
    entity_id: str
    rows: Dict[str, Tuple[Tuple[int, Dict[str, Any]], ...]] = field(default_factory=dict)
    detail: Optional[Dict[str, Any]] = None
    had_detail: bool = False

    @property
    def list_keys(self) -> List[str]:
        return list(self.rows)

    def stage_id(self) -> Optional[str]:
        """Stage the entity sat in when the snapshot was taken."""
        if self.detail is not None and self.detail.get(STAGE_FIELD) is not None:
            return self.detail[STAGE_FIELD]
        for rows in self.rows.values():
            for _, row in rows:
                if row.get(STAGE_FIELD) is not None:
                    return row[STAGE_FIELD]
        return None


class StageCache:
    """In-process cache of list and detail views."""

    def __init__(self):
        self._lists: Dict[str, List[Dict[str, Any]]] = {}
        self._details: Dict[str, Dict[str, Any]] = {}
        self._stale: Set[str] = set()

    # Reads

    def get_list(self, key: str) -> Optional[List[Dict[str, Any]]]:
        rows = self._lists.get(key)
        return copy.deepcopy(rows) if rows is not None else None

    def get_detail(self, entity_id: Any) -> Optional[Dict[str, Any]]:
        detail = self._details.get(str(entity_id))
        return copy.deepcopy(detail) if detail is not None else None

    def is_stale(self, key: str) -> bool:
        return key in self._stale

    def list_keys(self) -> List[str]:
        return list(self._lists)

    # Writes

    def set_list(self, key: str, rows: List[Dict[str, Any]]) -> None:
        self._lists[key] = copy.deepcopy(rows)
        self._stale.discard(key)

    def set_detail(self, entity_id: Any, record: Dict[str, Any]) -> None:
        self._details[str(entity_id)] = copy.deepcopy(record)

    def mark_stale(self, *keys: str) -> None:
        for key in keys:
            if key in self._lists:
                self._stale.add(key)
                logger.debug("Cache view %s marked stale", key)

    def drop(self, entity_id: Any) -> None:
        """Forget the detail record and every list row of one entity."""
        entity_id = str(entity_id)
        self._details.pop(entity_id, None)
        for key, rows in self._lists.items():
            self._lists[key] = [row for row in rows if _row_id(row) != entity_id]

    # Optimistic mutation support

    def snapshot(self, entity_id: Any) -> CacheSnapshot:
        """Capture every cached view of the entity so it can be restored verbatim."""
        entity_id = str(entity_id)
        rows = {}
        for key, view in self._lists.items():
            matches = tuple(
                (position, copy.deepcopy(row))
                for position, row in enumerate(view)
                if _row_id(row) == entity_id
            )
            if matches:
                rows[key] = matches

        detail = self._details.get(entity_id)
        return CacheSnapshot(
            entity_id=entity_id,
            rows=rows,
            detail=copy.deepcopy(detail),
            had_detail=detail is not None
        )

    def apply_stage(
        self,
        entity_id: Any,
        stage_id: str,
        funnel_id: Optional[str] = None
    ) -> List[str]:
        """
        Rewrite the entity's stage in every cached view. Returns the list keys touched.

        Runs to completion without yielding, so no reader sees a half-applied move.
        """
        entity_id = str(entity_id)
        touched = []
        for key, view in self._lists.items():
            hit = False
            for row in view:
                if _row_id(row) == entity_id:
                    _set_stage(row, stage_id, funnel_id)
                    hit = True
            if hit:
                touched.append(key)

        detail = self._details.get(entity_id)
        if detail is not None:
            _set_stage(detail, stage_id, funnel_id)
        return touched

    def restore(self, snapshot: CacheSnapshot) -> None:
        """Put back every view captured by snapshot(), leaving other entities alone."""
        entity_id = snapshot.entity_id
        for key, rows in snapshot.rows.items():
            view = self._lists.get(key)
            if view is None:
                continue
            for position, row in rows:
                index = _locate(view, entity_id, position)
                if index is None:
                    view.insert(min(position, len(view)), copy.deepcopy(row))
                else:
                    view[index] = copy.deepcopy(row)

        if snapshot.had_detail:
            self._details[entity_id] = copy.deepcopy(snapshot.detail)
        else:
            self._details.pop(entity_id, None)


def _row_id(row: Dict[str, Any]) -> Optional[str]:
    value = row.get(ID_FIELD)
    return str(value) if value is not None else None


def _set_stage(record: Dict[str, Any], stage_id: str, funnel_id: Optional[str]) -> None:
    record[STAGE_FIELD] = stage_id
    if funnel_id is not None:
        record[FUNNEL_FIELD] = funnel_id


def _locate(view: List[Dict[str, Any]], entity_id: str, position: int) -> Optional[int]:
    # Prefer the original slot; fall back to wherever the row moved to
    if position < len(view) and _row_id(view[position]) == entity_id:
        return position
    for index, row in enumerate(view):
        if _row_id(row) == entity_id:
            return index
    return None
