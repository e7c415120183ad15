"""Tests for column types shared between the models and the migration."""

import pytest
from sqlalchemy.dialects import postgresql, sqlite

from tablexport.db.models.payment import Payment
from tablexport.db.models.webhook_event import PayPalWebhookEvent

pytestmark = pytest.mark.unit

JSON_COLUMNS = [Payment.__table__.c.provider_data, PayPalWebhookEvent.__table__.c.data]


@pytest.mark.parametrize("column", JSON_COLUMNS, ids=lambda c: f"{c.table.name}.{c.name}")
def test_json_columns_are_jsonb_on_postgres(column):
    assert column.type.compile(dialect=postgresql.dialect()) == "JSONB"


@pytest.mark.parametrize("column", JSON_COLUMNS, ids=lambda c: f"{c.table.name}.{c.name}")
def test_json_columns_fall_back_to_json_on_sqlite(column):
    assert column.type.compile(dialect=sqlite.dialect()) == "JSON"
