"""
Local school and student directory used to resolve remote identifiers.
"""

import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from attendance_sync.integrations.sis.error_handler import InvalidConfigurationError
from attendance_sync.models.student import School, Student
from attendance_sync.services.sync.transformer import SchoolRef


logger = logging.getLogger(__name__)


class StudentMap:
    """Remote student id -> local student id for one school."""

    def __init__(self, school: SchoolRef, mapping: Dict[str, int]):
        self.school = school
        self._mapping = mapping

    def __call__(self, aeries_student_id: str) -> Optional[int]:
        return self._mapping.get(str(aeries_student_id).strip())

    def __len__(self) -> int:
        return len(self._mapping)


class LocalDirectory:
    """Reads target schools and their students from the local store."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def resolve_schools(self, school_codes: Optional[Sequence[str]] = None) -> List[SchoolRef]:
        """
        Get the active schools to sync, in school code order.

        Args:
            school_codes: Optional filter of local school codes

        Raises:
            InvalidConfigurationError: If a requested school code is unknown or inactive
        """
        async with self.session_factory() as session:
            query = select(School).where(School.is_active.is_(True)).order_by(School.school_code)
            if school_codes:
                query = query.where(School.school_code.in_(list(school_codes)))
            result = await session.execute(query)
            schools = result.scalars().all()

        refs = [
            SchoolRef(id=s.id, school_code=s.school_code, aeries_school_code=s.aeries_school_code)
            for s in schools
        ]

        if school_codes:
            found = {ref.school_code for ref in refs}
            missing = sorted(set(school_codes) - found)
            if missing:
                raise InvalidConfigurationError(
                    f"Unknown or inactive school codes: {', '.join(missing)}",
                    details={'school_codes': missing}
                )

        logger.info(f"Resolved {len(refs)} target schools")
        return refs

    async def load_student_map(self, school: SchoolRef) -> StudentMap:
        """Prefetch the student id mapping of one school."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Student.aeries_student_id, Student.id).where(
                    Student.school_id == school.id,
                    Student.is_active.is_(True)
                )
            )
            mapping = {str(aeries_id).strip(): student_id for aeries_id, student_id in result.all()}

        logger.info(f"Loaded {len(mapping)} students for school {school.school_code}")
        return StudentMap(school, mapping)
