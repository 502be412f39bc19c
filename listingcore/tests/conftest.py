import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from listingcore.app.catalog.option_catalog import OptionCatalog
from listingcore.app.db.models import Base
from listingcore.app.db.session import make_session_factory
from listingcore.app.db.store import SqlAlchemyListingStore

CATALOG_ENTRIES = [
    {"name": "Porsche Doppelkupplung (PDK)", "category": "drivetrain"},
    {"name": "Porsche Ceramic Composite Brakes", "category": "chassis"},
    {"name": "Sport Chrono Package", "category": "performance"},
    {"name": "Front Axle Lift System", "category": "chassis"},
    {"name": "Full Bucket Seats", "category": "interior"},
    {"name": "Paint to Sample", "category": "exterior"},
    {"name": "Weissach Package", "category": "performance"},
]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return SqlAlchemyListingStore(session_factory)


@pytest.fixture
def option_catalog(store):
    store.add_catalog_options(CATALOG_ENTRIES)
    return OptionCatalog(store.load_option_catalog())
