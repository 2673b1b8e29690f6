"""
Audit trail endpoints
"""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query

from .dependencies import LedgerSystem, get_ledger_system, require_viewer
from .schemas import AuditEntryResponse


router = APIRouter()


@router.get("/verify")
def verify_audit_chain(
    actor_id: Optional[str] = Depends(require_viewer),
    system: LedgerSystem = Depends(get_ledger_system)
) -> Dict[str, Any]:
    """Verify the hash chain of the whole audit log"""
    return system.audit_trail.verify_integrity()


@router.get("/{entity}/{entity_id}", response_model=List[AuditEntryResponse])
def get_entity_history(
    entity: str,
    entity_id: str,
    limit: Optional[int] = Query(None, ge=1),
    actor_id: Optional[str] = Depends(require_viewer),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Audit entries of one entity, oldest first"""
    entries = system.audit_trail.get_entries_for_entity(entity, entity_id, limit=limit)
    return [AuditEntryResponse.from_entry(e) for e in entries]
