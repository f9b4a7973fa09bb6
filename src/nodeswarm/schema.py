import logging

from sqlalchemy import Engine, inspect, text

logger = logging.getLogger(__name__)


def get_table_names(appname: str = 'swarm_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Node': f'{appname}node',
    }


def verify_tables_exist(engine: Engine, appname: str = 'swarm_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status
    """
    tables = get_table_names(appname)
    inspector = inspect(engine)
    return {key: inspector.has_table(name) for key, name in tables.items()}


def _create_node_table(engine: Engine, tables: dict[str, str]) -> None:
    """Create the membership table.

    Timestamps are epoch seconds so liveness cutoffs are computed by the
    caller and the same statements run on PostgreSQL and SQLite.
    """
    Node = tables['Node']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Node} (
    name varchar not null,
    metadata text,
    created_on double precision not null,
    last_heartbeat double precision,
    primary key (name)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Node}_heartbeat ON {Node}(last_heartbeat)'))

        conn.commit()

    logger.debug(f'Membership table verified: {Node}')


def ensure_database_ready(engine: Engine, appname: str = 'swarm_') -> None:
    """Ensure database has all required tables.

    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k, exists in table_status.items() if not exists]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_node_table(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
