"""Tests for engine construction and the transactional session scope."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select, text

from escrow_kernel.db.engine import build_engine, get_session, session_scope
from escrow_kernel.domain.escrow import FundingTerms, MilestoneSpec
from escrow_kernel.models.escrow import EscrowAccountModel
from escrow_services.orchestrator import EscrowOrchestrator
from tests.conftest import community_and_government, make_parties

SCOPE_CONTRACT = "CNT-SCOPE-01"


class TestBuildEngine:

    def test_sqlite_enforces_foreign_keys(self, tmp_path):
        engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'fk.db'}")
        try:
            with engine.connect() as conn:
                assert conn.execute(text("PRAGMA foreign_keys")).scalar_one() == 1
        finally:
            engine.dispose()

    def test_in_memory_connections_share_one_database(self):
        engine = build_engine("sqlite+pysqlite:///:memory:")
        try:
            with engine.connect() as conn:
                conn.execute(text("CREATE TABLE scratch (id INTEGER)"))
                conn.commit()
            with engine.connect() as conn:
                assert conn.execute(text("SELECT count(*) FROM scratch")).scalar_one() == 0
        finally:
            engine.dispose()


class TestSessionScope:

    def test_rolls_back_on_error(
        self, db_tables, escrow_config, approver_directory, verification,
        transfer, contracts, businesses, deterministic_clock,
    ):
        approver_directory.authorize_all(SCOPE_CONTRACT, [
            (r.approver_type, r.approver_id) for r in community_and_government()
        ])

        with pytest.raises(RuntimeError, match="abort"):
            with session_scope() as session:
                escrow = EscrowOrchestrator(
                    session=session,
                    approver_directory=approver_directory,
                    verification=verification,
                    transfer=transfer,
                    contracts=contracts,
                    businesses=businesses,
                    config=escrow_config,
                    clock=deterministic_clock,
                ).escrow
                escrow.create(
                    make_parties(),
                    [MilestoneSpec(
                        key="m1",
                        description="All work",
                        approvers=community_and_government(),
                        percentage=Decimal("100"),
                    )],
                    FundingTerms(contract_reference=SCOPE_CONTRACT, total_amount=Decimal("5000.00")),
                )
                raise RuntimeError("abort")

        check = get_session()
        try:
            count = check.execute(
                select(func.count()).select_from(EscrowAccountModel).where(
                    EscrowAccountModel.contract_reference == SCOPE_CONTRACT,
                )
            ).scalar_one()
        finally:
            check.close()
        assert count == 0
