"""Shared fixtures: a small warehouse catalog with databases, tables and ETL processes."""

from types import SimpleNamespace

import pytest

from typed_catalog import Entity, MemoryJournal, MetadataService, TraitInstance

SAMPLE_TYPES = """
enum TableType { MANAGED = 1, EXTERNAL }

struct Serde { name: string required, serializationLib: string }

trait Dimension {}
trait Fact {}
trait PII {}
trait Metric {}
trait ETL {}
trait JdbcAccess {}
trait Retention { days: int required, archive: boolean }

class DataSet { name: string required, description: string }

class DB {
    name: string required,
    description: string,
    locationUri: string,
    owner: string,
    createTime: int
}

class StorageDesc {
    location: string,
    inputFormat: string,
    outputFormat: string,
    compressed: boolean,
    serde: Serde
}

class Column { name: string required, dataType: string, comment: string }

class Table extends DataSet {
    db: DB required reverse tables,
    sd: StorageDesc composite,
    owner: string,
    createTime: int,
    retention: int,
    tableType: TableType,
    created: date,
    columns: Column[] composite,
    parameters: map<string,string>
}

class View extends DataSet {
    db: DB required,
    inputTables: Table[]
}

class Process {
    name: string required,
    inputTables: Table[],
    outputTables: Table[],
    queryText: string
}

class LoadProcess extends Process { schedule: string }
"""


def table_draft(name, db, columns=("id",), traits=(), **values):
    """Build a Table draft with composite columns and storage descriptor."""
    return Entity.draft(
        "Table",
        {
            "name": name,
            "db": db,
            "sd": Entity.draft("StorageDesc", {"location": f"hdfs://warehouse/{name}", "compressed": True}),
            "columns": [Entity.draft("Column", {"name": c, "dataType": "string"}) for c in columns],
            **values,
        },
        traits=traits,
    )


@pytest.fixture
def journal():
    return MemoryJournal()


@pytest.fixture
def service(journal):
    """A service with the sample types registered and no entities."""
    svc = MetadataService(journal=journal)
    svc.register_types(SAMPLE_TYPES)
    return svc


@pytest.fixture
def warehouse(service):
    """The sample catalog populated with two databases, four tables and two processes."""
    sales_db = service.create_entity(Entity.draft("DB", {"name": "Sales", "owner": "John ETL", "createTime": 1000}))
    reporting_db = service.create_entity(Entity.draft("DB", {"name": "Reporting", "owner": "Jane BI"}))

    customer_dim = service.create_entity(
        table_draft("customer_dim", sales_db, ("customer_id", "name", "address"), traits=["Dimension"],
                    owner="John Doe", retention=30, tableType="MANAGED", created="2024-01-15")
    )
    product_dim = service.create_entity(
        table_draft("product_dim", sales_db, ("product_id", "product_name"), traits=["Dimension"],
                    owner="John Doe", retention=30, tableType="EXTERNAL")
    )
    sales_fact = service.create_entity(
        table_draft("sales_fact", sales_db, ("time_id", "product_id", "customer_id", "sales"), traits=["Fact"],
                    owner="Joe", retention=90, created="2024-03-01")
    )
    sales_fact_daily = service.create_entity(
        table_draft("sales_fact_daily_mv", reporting_db, ("time_id", "sales"), traits=["Metric"],
                    owner="Joe BI", retention=365)
    )
    service.attach_trait(customer_dim, "PII")

    load_sales = service.create_entity(Entity.draft(
        "LoadProcess",
        {
            "name": "loadSalesDaily",
            "inputTables": [sales_fact, product_dim],
            "outputTables": [sales_fact_daily],
            "queryText": "create table as select ...",
            "schedule": "daily",
        },
        traits=["ETL"],
    ))
    view = service.create_entity(Entity.draft(
        "View", {"name": "customer_view", "db": reporting_db, "inputTables": [customer_dim]}, traits=["JdbcAccess"]
    ))
    service.attach_trait(sales_fact, TraitInstance("Retention", {"days": 400, "archive": True}))
    service.attach_trait(sales_fact_daily, TraitInstance("Retention", {"days": 30}))

    return SimpleNamespace(
        sales_db=sales_db,
        reporting_db=reporting_db,
        customer_dim=customer_dim,
        product_dim=product_dim,
        sales_fact=sales_fact,
        sales_fact_daily=sales_fact_daily,
        load_sales=load_sales,
        view=view,
    )
