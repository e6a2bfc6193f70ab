"""
Quick script to create the first admin and the default payment methods
"""
import asyncio
from sqlalchemy import select, text

from rental.config import config
from rental.database.core import AsyncSessionLocal
from rental.database.models import User, UserRole, PaymentMethod

DEFAULT_PAYMENT_METHODS = {
    config.TRANSFER_PAYMENT_METHOD_ID: "Bank transfer (PayOS)",
    config.CASH_PAYMENT_METHOD_ID: "Cash",
}


async def seed_payment_methods(session) -> int:
    created = 0
    for method_id, name in DEFAULT_PAYMENT_METHODS.items():
        if await session.get(PaymentMethod, method_id):
            continue
        session.add(PaymentMethod(id=method_id, name=name, status="active"))
        created += 1
    await session.flush()
    await sync_payment_method_sequence(session)
    await session.commit()
    return created


async def sync_payment_method_sequence(session):
    """Move the PostgreSQL id sequence past the explicitly seeded ids"""
    if session.bind.dialect.name != "postgresql":
        return
    await session.execute(text(
        "SELECT setval(pg_get_serial_sequence('payment_methods', 'id'), "
        "(SELECT MAX(id) FROM payment_methods))"
    ))


async def check_and_add_admin():
    async with AsyncSessionLocal() as session:
        created = await seed_payment_methods(session)
        print(f"✅ Payment methods ready ({created} created)")

        print("Enter admin email:")
        email = input().strip()

        stmt = select(User).where(User.email == email)
        result = await session.execute(stmt)
        user = result.scalar_one_or_none()

        if user:
            print(f"✅ User found: {user.name} ({user.role})")
        else:
            print("❌ User not found. Creating admin...")

            print("Enter full name:")
            name = input().strip()

            new_user = User(
                name=name,
                email=email,
                role=UserRole.admin.value,
                is_active=True
            )
            session.add(new_user)
            await session.commit()
            print(f"✅ Admin created: {name}")

        # Show all users
        result = await session.execute(select(User).order_by(User.id))
        users = result.scalars().all()

        print("\n📋 All users in database:")
        for u in users:
            print(f"  - {u.name} (ID: {u.id}, Role: {u.role})")

if __name__ == "__main__":
    asyncio.run(check_and_add_admin())
