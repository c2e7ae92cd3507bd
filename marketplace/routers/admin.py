from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_db, require_admin
from ..models import User
from ..schemas import ReconcileOut, SweepOut
from ..services import ledger, sweeper
from ..utils.audit import record_event


router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/sweep", response_model=SweepOut)
def run_sweep(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    # The sweep runs its own units of work; end the request's first
    db.commit()
    result = sweeper.run_once()
    return SweepOut(**result.as_dict())


@router.get("/reconcile", response_model=ReconcileOut)
def reconcile(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    mismatches = ledger.reconcile(db)
    return ReconcileOut(ok=not mismatches, mismatches=mismatches)


@router.post("/reconcile/fix", response_model=ReconcileOut)
def reconcile_fix(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    fixed = ledger.fix_balances(db)
    if fixed:
        record_event(db, "ledger.balances_fixed", admin.id, {"wallets": fixed})
    mismatches = ledger.reconcile(db)
    return ReconcileOut(ok=not mismatches, mismatches=mismatches)
