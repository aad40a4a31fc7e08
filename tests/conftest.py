"""
Pytest Configuration and Fixtures

Shared fixtures for the ADR review engine tests.
"""
import sys
from datetime import timedelta
from pathlib import Path
from typing import Callable

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from storage.config import Settings
from storage.db import ReportStore
from storage.models import (
    ActorContext,
    ActorRole,
    MedicineRef,
    Report,
    SideEffect,
    utcnow,
)
from storage.report_manager import ReportManager


@pytest.fixture
def store(tmp_path: Path) -> ReportStore:
    """A fresh SQLite report store in a temp directory."""
    return ReportStore(tmp_path / "reports.db")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(db_path=tmp_path / "reports.db")


@pytest.fixture
def manager(store: ReportStore, settings: Settings) -> ReportManager:
    return ReportManager(store=store, settings=settings)


@pytest.fixture
def patient() -> ActorContext:
    return ActorContext(actor_id="patient-1", actor_role=ActorRole.patient)


@pytest.fixture
def other_patient() -> ActorContext:
    return ActorContext(actor_id="patient-2", actor_role=ActorRole.patient)


@pytest.fixture
def doctor() -> ActorContext:
    return ActorContext(actor_id="doctor-1", actor_role=ActorRole.doctor)


@pytest.fixture
def admin() -> ActorContext:
    return ActorContext(actor_id="admin-1", actor_role=ActorRole.admin)


@pytest.fixture
def make_report() -> Callable[..., Report]:
    """Factory for unsaved reports."""
    def _make(
        severities: tuple[str, ...] = ("mild",),
        medicine: str = "Ibuprofen",
        reporter_id: str = "patient-1",
        reporter_name: str = "Alice Moreau",
        effect: str = "Rash",
        age_days: float = 0,
        **overrides,
    ) -> Report:
        created = utcnow() - timedelta(days=age_days)
        data = dict(
            reporter_id=reporter_id,
            reporter_name=reporter_name,
            medicine=MedicineRef(name=medicine, dosage="200mg", route="oral"),
            side_effects=[
                SideEffect(effect=f"{effect} {i}" if i else effect, severity=s)
                for i, s in enumerate(severities)
            ],
            created_at=created,
            updated_at=created,
        )
        data.update(overrides)
        return Report(**data)
    return _make


@pytest.fixture
def submitted(manager: ReportManager, patient: ActorContext, make_report) -> Callable[..., Report]:
    """Factory that submits a report through the engine."""
    def _submit(*args, **kwargs) -> Report:
        return manager.submit(patient, make_report(*args, **kwargs))
    return _submit
