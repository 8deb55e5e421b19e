"""
Student Records Registry - Test Configuration and Fixtures
"""
import io
import os
import zipfile
from datetime import date
from typing import AsyncGenerator, Dict
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from faker import Faker

# Set testing environment
os.environ['TESTING'] = 'true'
os.environ['ENVIRONMENT'] = 'test'
os.environ['DATABASE_URL'] = 'sqlite+aiosqlite:///./test.db'
os.environ['UPLOAD_DIR'] = './test_uploads'
os.environ['LOG_LEVEL'] = 'WARNING'

from app.main import app
from app.api.dependencies import get_cache_registry, get_storage
from app.core.database import Base, get_db, get_session_factory
from app.models import AcademicYear, Department, Faculty, Student
from app.models.student import Gender, StudentStatus
from app.services.cache_service import ManualClock, build_cache_registry
from app.services.document_service import LocalDocumentStorage

fake = Faker()

# Test database setup
TEST_DATABASE_URL = 'sqlite+aiosqlite:///./test.db'
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)


@pytest.fixture(scope='function')
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test"""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
async def cache_registry(clock: ManualClock):
    """Isolated cache registry driven by a manual clock"""
    registry = build_cache_registry(clock)
    yield registry
    await registry.close()


@pytest.fixture
def storage(tmp_path) -> LocalDocumentStorage:
    return LocalDocumentStorage(tmp_path / 'uploads')


@pytest.fixture
async def client(db_session: AsyncSession, cache_registry, storage) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database, cache and storage overrides"""
    async def override_get_db():
        try:
            yield db_session
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal
    app.dependency_overrides[get_cache_registry] = lambda: cache_registry
    app.dependency_overrides[get_storage] = lambda: storage

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac

    app.dependency_overrides.clear()


# ==================== Sample data ====================

@pytest.fixture
async def faculty(db_session: AsyncSession) -> Faculty:
    faculty = Faculty(name='Faculty of Computing', code='FOC')
    db_session.add(faculty)
    await db_session.commit()
    return faculty


@pytest.fixture
async def department(db_session: AsyncSession, faculty: Faculty) -> Department:
    department = Department(name='Computer Science', code='BCS', faculty_id=faculty.id)
    db_session.add(department)
    await db_session.commit()
    return department


@pytest.fixture
async def academic_year(db_session: AsyncSession) -> AcademicYear:
    year = AcademicYear(year='2020-2021', is_active=True)
    db_session.add(year)
    await db_session.commit()
    return year


@pytest.fixture
def make_student(db_session: AsyncSession, department: Department, faculty: Faculty, academic_year: AcademicYear):
    """Factory that persists a student; keyword arguments override the defaults"""
    async def _make(**overrides) -> Student:
        values = dict(
            registration_id=f'GRW-BCS-{fake.unique.random_int(1000, 9999)}',
            certificate_id=str(fake.unique.random_int(100000, 999999)),
            full_name=fake.name(),
            gender=Gender.FEMALE,
            phone_number=fake.numerify('0#########'),
            department_id=department.id,
            faculty_id=faculty.id,
            academic_year_id=academic_year.id,
            gpa=3.4,
            grade='A',
            graduation_date=date(2021, 7, 15),
            status=StudentStatus.CLEARED,
        )
        values.update(overrides)
        student = Student(**values)
        db_session.add(student)
        await db_session.commit()
        return student
    return _make


@pytest.fixture
def student_payload(department: Department, academic_year: AcademicYear) -> Dict:
    return {
        'registration_id': 'grw-bcs-2021',
        'certificate_id': '202100123',
        'full_name': fake.name(),
        'gender': 'MALE',
        'phone_number': '0612345678',
        'department_id': department.id,
        'academic_year_id': academic_year.id,
        'gpa': 3.7,
        'grade': 'A',
        'graduation_date': '2021-07-15',
        'status': 'CLEARED',
    }


def build_zip(files: Dict[str, bytes]) -> bytes:
    """In-memory ZIP archive from {path: content}"""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as archive:
        for path, content in files.items():
            archive.writestr(path, content)
    return buffer.getvalue()
