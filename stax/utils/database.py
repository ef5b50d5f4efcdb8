"""
Connections to the local WordPress database
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import MetaData, Table, create_engine, inspect
from sqlalchemy.engine import URL, Engine

from stax.errors import InvalidArgument
from stax.utils.ddev import DDEV


def mysql_url(info: Dict[str, Any]) -> URL:
    """
    Builds a PyMySQL connection URL from DDEV database details

    Args:
        info: Mapping with host, port, database, username, password

    Raises:
        InvalidArgument: If the published port is unknown (the project is not running)
    """
    if not info.get("port"):
        raise InvalidArgument("database", "local database port is not published; is the project running?")
    return URL.create(
        "mysql+pymysql",
        username=info.get("username", "db"),
        password=info.get("password", "db"),
        host=info.get("host", "127.0.0.1"),
        port=int(info["port"]),
        database=info.get("database", "db"),
        query={"charset": "utf8mb4"},
    )


def create_local_engine(ddev: DDEV, echo: bool = False) -> Engine:
    """
    Creates an engine for the DDEV project's database
    """
    return create_engine(mysql_url(ddev.db_info()), echo=echo, pool_pre_ping=True)


def list_tables(engine: Engine, prefix: Optional[str] = None) -> List[str]:
    names = inspect(engine).get_table_names()
    if prefix:
        names = [name for name in names if name.startswith(prefix)]
    return sorted(names)


def reflect_table(engine: Engine, name: str) -> Table:
    return Table(name, MetaData(), autoload_with=engine)
