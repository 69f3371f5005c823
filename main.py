from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import Response
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import NotFoundError, PersistenceFailure
from reconciliation import ReconciliationEngine
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    IncomeEntryIn,
    IncomeEntryOut,
    PreferencesIn,
    SnapshotIn,
    SnapshotOut,
    TransactionIn,
    TransactionOut,
    TransferIn,
)
from services import (
    AccountService,
    IncomeService,
    PreferenceService,
    SnapshotService,
    TransactionService,
    TransferService,
    get_current_user_id,
)

app = FastAPI(title="Account Balances")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PersistenceFailure):
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list_all()


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(account_id: str, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/accounts/{account_id}/snapshots", response_model=list[SnapshotOut])
def list_snapshots(account_id: str, db: Session = Depends(get_db)):
    try:
        return SnapshotService(db).list_for_account(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post(
    "/api/accounts/{account_id}/snapshots",
    response_model=SnapshotOut,
    status_code=201,
)
def record_snapshot(account_id: str, data: SnapshotIn, db: Session = Depends(get_db)):
    try:
        return SnapshotService(db).record(account_id, data)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc


@app.delete("/api/snapshots/{snapshot_id}", status_code=204)
def delete_snapshot(snapshot_id: int, db: Session = Depends(get_db)):
    try:
        SnapshotService(db).delete(snapshot_id)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/accounts/{account_id}/reconcile", response_model=list[SnapshotOut])
def reconcile_account(account_id: str, db: Session = Depends(get_db)):
    try:
        AccountService(db).get(account_id)
        return ReconciliationEngine(db).reconcile(account_id, get_current_user_id())
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc


@app.get("/api/accounts/{account_id}/income", response_model=list[IncomeEntryOut])
def list_income(account_id: str, db: Session = Depends(get_db)):
    try:
        return IncomeService(db).list_for_account(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/income", response_model=IncomeEntryOut, status_code=201)
def create_income(data: IncomeEntryIn, db: Session = Depends(get_db)):
    try:
        return IncomeService(db).create(data)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc


@app.put("/api/income/{entry_id}", response_model=IncomeEntryOut)
def update_income(entry_id: int, data: IncomeEntryIn, db: Session = Depends(get_db)):
    try:
        return IncomeService(db).update(entry_id, data)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc


@app.delete("/api/income/{entry_id}", status_code=204)
def delete_income(entry_id: int, db: Session = Depends(get_db)):
    try:
        IncomeService(db).delete(entry_id)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(paid_by: Optional[str] = None, db: Session = Depends(get_db)):
    return TransactionService(db).list(paid_by=paid_by)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create(data)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    try:
        return TransactionService(db).update(transaction_id, data)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).soft_delete(transaction_id)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/transactions/{transaction_id}/restore", response_model=TransactionOut)
def restore_transaction(transaction_id: int, db: Session = Depends(get_db)):
    service = TransactionService(db)
    try:
        service.restore(transaction_id)
        return service.get(transaction_id)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc


@app.post("/api/transfers", status_code=201)
def create_transfer(data: TransferIn, db: Session = Depends(get_db)):
    try:
        expense, income = TransferService(db).record(data)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc
    return {
        "expense": TransactionOut.model_validate(expense).model_dump(mode="json"),
        "income_entry": IncomeEntryOut.model_validate(income).model_dump(mode="json"),
    }


@app.get("/api/preferences")
def get_preferences(db: Session = Depends(get_db)):
    return {"auto_adjust_balances_from_income": PreferenceService(db).get()}


@app.put("/api/preferences")
def update_preferences(data: PreferencesIn, db: Session = Depends(get_db)):
    try:
        enabled = PreferenceService(db).set(data.auto_adjust_balances_from_income)
    except (ValueError, PersistenceFailure) as exc:
        raise http_error(exc) from exc
    return {"auto_adjust_balances_from_income": enabled}
