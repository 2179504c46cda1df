"""
Purchase Service — 受講関係 (Enrollment Store / Enrollment Applier)

User.enrolledCourses と Course.enrolledStudents は、enrollments テーブルの
同じ行を両側から見たものとして表現する。したがって片側だけに
ペアが存在する状態は起こり得ない。

apply_enrollment は受講関係を書き換える唯一の入口。
削除の経路は存在しない（受講関係は単調増加）。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import enrollments, insert_for

logger = logging.getLogger(__name__)


async def apply_enrollment(
    session: AsyncSession,
    user_id: str,
    course_id: str,
    purchase_id: str | None = None,
) -> bool:
    """
    (user_id, course_id) を冪等に受講関係へ追加する。

    存在確認と書き込みは主キーに対する単一の
    INSERT ... ON CONFLICT DO NOTHING で行う。同じペアに対する
    並行呼び出しでも挿入されるのは一行だけで、どちらの呼び出しも成功する。

    戻り値: この呼び出しで挿入した場合 True、既に受講済みなら False。
    コミットは呼び出し側のトランザクションに任せる。
    """
    insert = insert_for(session)
    stmt = (
        insert(enrollments)
        .values(
            user_id=user_id,
            course_id=course_id,
            purchase_id=purchase_id,
            enrolled_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["user_id", "course_id"])
        .returning(enrollments.c.user_id)
    )
    result = await session.execute(stmt)
    inserted = result.first() is not None

    if inserted:
        logger.info("Enrolled user %s into course %s (purchase=%s)", user_id, course_id, purchase_id)
    else:
        logger.info("Enrollment already exists for user %s and course %s", user_id, course_id)
    return inserted


async def is_enrolled(session: AsyncSession, user_id: str, course_id: str) -> bool:
    result = await session.execute(
        select(enrollments.c.user_id).where(
            enrollments.c.user_id == user_id,
            enrollments.c.course_id == course_id,
        )
    )
    return result.first() is not None


async def enrolled_course_ids(session: AsyncSession, user_id: str) -> set[str]:
    """User.enrolledCourses"""
    result = await session.execute(
        select(enrollments.c.course_id).where(enrollments.c.user_id == user_id)
    )
    return set(result.scalars().all())


async def enrolled_student_ids(session: AsyncSession, course_id: str) -> set[str]:
    """Course.enrolledStudents"""
    result = await session.execute(
        select(enrollments.c.user_id).where(enrollments.c.course_id == course_id)
    )
    return set(result.scalars().all())
