"""
Purchase Service — クエリハンドラ (読み取り側)

コース・受講一覧・購入履歴の読み取り。状態は変更しない。
"""

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .aggregate import SUCCESS, PurchaseAggregate
from .schema import courses, enrollments, purchases, users


def _course_to_dict(row) -> dict:
    return {
        "id": row.id,
        "title": row.title,
        "thumbnail": row.thumbnail,
        "educator_id": row.educator_id,
        "price": Decimal(row.price),
        "discount": row.discount,
    }


async def get_course(session: AsyncSession, course_id: str) -> dict | None:
    result = await session.execute(select(courses).where(courses.c.id == course_id))
    row = result.first()
    return _course_to_dict(row) if row else None


async def list_enrolled_courses(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        select(courses)
        .join(enrollments, enrollments.c.course_id == courses.c.id)
        .where(enrollments.c.user_id == user_id)
        .order_by(enrollments.c.enrolled_at.desc())
    )
    return [_course_to_dict(row) for row in result.fetchall()]


async def list_enrolled_students(
    session: AsyncSession, educator_id: str, limit: int | None = None
) -> list[dict]:
    """講師のコースについて、支払い済みの購入を受講者情報付きで返す。"""
    result = await session.execute(
        select(
            purchases.c.id.label("purchase_id"),
            purchases.c.user_id,
            purchases.c.amount,
            purchases.c.created_at,
            courses.c.id.label("course_id"),
            courses.c.title.label("course_title"),
            users.c.name.label("student_name"),
            users.c.image_url.label("student_image_url"),
        )
        .join(courses, courses.c.id == purchases.c.course_id)
        .outerjoin(users, users.c.id == purchases.c.user_id)
        .where(courses.c.educator_id == educator_id, purchases.c.status == SUCCESS)
        .order_by(purchases.c.created_at.desc())
        .limit(limit)
    )
    return [
        {
            "purchase_id": row.purchase_id,
            "student": {
                "id": row.user_id,
                "name": row.student_name,
                "image_url": row.student_image_url,
            },
            "course_id": row.course_id,
            "course_title": row.course_title,
            "amount": str(Decimal(row.amount).quantize(Decimal("0.01"))),
            "purchase_date": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]


async def educator_dashboard(session: AsyncSession, educator_id: str) -> dict:
    """
    講師ダッシュボードの集計。

    売上は success の購入だけを合計する（pending / failed / expired は含めない）。
    受講者一覧は新しい順に最大 10 件。
    """
    total_courses = (
        await session.execute(
            select(func.count()).select_from(courses).where(courses.c.educator_id == educator_id)
        )
    ).scalar_one()

    total_enrollments = (
        await session.execute(
            select(func.count())
            .select_from(enrollments)
            .join(courses, courses.c.id == enrollments.c.course_id)
            .where(courses.c.educator_id == educator_id)
        )
    ).scalar_one()

    earnings = (
        await session.execute(
            select(func.coalesce(func.sum(purchases.c.amount), 0))
            .select_from(purchases)
            .join(courses, courses.c.id == purchases.c.course_id)
            .where(courses.c.educator_id == educator_id, purchases.c.status == SUCCESS)
        )
    ).scalar_one()

    return {
        "totalEarnings": str(Decimal(earnings).quantize(Decimal("0.01"))),
        "totalCourses": total_courses,
        "totalEnrollments": total_enrollments,
        "enrolledStudentsData": await list_enrolled_students(session, educator_id, limit=10),
    }


async def purchase_history(
    session: AsyncSession, purchase_id: str, user_id: str
) -> dict | None:
    """
    購入のイベント履歴と、そこから再構築した状態を返す。
    他人の購入は見えない（存在しないのと同じ扱い）。
    """
    events = await event_store.load_events(session, purchase_id)
    if not events:
        return None
    agg = PurchaseAggregate.from_events(events)
    if agg.user_id != user_id:
        return None
    return {"purchase": agg.to_dict(), "events": events}
