from types import SimpleNamespace

import pytest

from sqlalchemy import select

from rental.config import config
from rental.database.models import PaymentMethod
from seed_defaults import seed_payment_methods, sync_payment_method_sequence


class RecordingSession:
    """Collects the SQL a helper would run on a given dialect"""

    def __init__(self, dialect):
        self.bind = SimpleNamespace(dialect=SimpleNamespace(name=dialect))
        self.statements = []

    async def execute(self, statement):
        self.statements.append(str(statement))


@pytest.mark.asyncio
async def test_seeded_ids_do_not_block_new_methods(async_session):
    assert await seed_payment_methods(async_session) == 2
    assert await seed_payment_methods(async_session) == 0

    card = PaymentMethod(name="Card", status="active")
    async_session.add(card)
    await async_session.commit()

    ids = (await async_session.execute(select(PaymentMethod.id).order_by(PaymentMethod.id))).scalars().all()
    assert ids == sorted({config.TRANSFER_PAYMENT_METHOD_ID, config.CASH_PAYMENT_METHOD_ID, card.id})
    assert card.id > max(config.TRANSFER_PAYMENT_METHOD_ID, config.CASH_PAYMENT_METHOD_ID)


@pytest.mark.asyncio
async def test_sequence_is_moved_on_postgresql_only():
    postgres = RecordingSession("postgresql")
    sqlite = RecordingSession("sqlite")

    await sync_payment_method_sequence(postgres)
    await sync_payment_method_sequence(sqlite)

    assert len(postgres.statements) == 1
    assert "setval(pg_get_serial_sequence('payment_methods', 'id')" in postgres.statements[0]
    assert sqlite.statements == []
