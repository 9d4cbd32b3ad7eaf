# AppStack - Database Provisioning

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import psycopg
from psycopg import sql

from appstack.core.config import Settings
from appstack.core.errors import DatabaseError, DatabaseNotFound, ExternalProcessFailure
from appstack.core.models import DatabaseInfo
from appstack.core.process import ProcessRunner

logger = logging.getLogger("appstack.database")

_SYSTEM_DATABASES = {"postgres", "template0", "template1"}


class PostgresProvisioner:
    """Creates, drops, dumps and restores per-application databases."""

    def __init__(self, settings: Settings, runner: Optional[ProcessRunner] = None):
        self.settings = settings
        self.runner = runner or ProcessRunner()

    def _connect(self, dbname: Optional[str] = None) -> psycopg.Connection:
        s = self.settings
        try:
            # CREATE/DROP DATABASE cannot run inside a transaction block.
            return psycopg.connect(
                host=s.db_host,
                port=s.db_port,
                user=s.db_admin_user,
                password=s.db_admin_password or None,
                dbname=dbname or s.db_admin_database,
                autocommit=True,
            )
        except psycopg.Error as e:
            raise DatabaseError(f"Failed to connect to database server: {e}") from e

    def create_database(self, name: str, user: str, secret: str) -> None:
        try:
            with self._connect() as conn, conn.cursor() as cur:
                cur.execute("SELECT 1 FROM pg_roles WHERE rolname = %s", (user,))
                if cur.fetchone() is None:
                    cur.execute(
                        sql.SQL("CREATE ROLE {} LOGIN PASSWORD {}").format(
                            sql.Identifier(user), sql.Literal(secret)
                        )
                    )
                cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (name,))
                if cur.fetchone() is None:
                    cur.execute(
                        sql.SQL("CREATE DATABASE {} OWNER {} ENCODING 'UTF8'").format(
                            sql.Identifier(name), sql.Identifier(user)
                        )
                    )
                cur.execute(
                    sql.SQL("GRANT ALL PRIVILEGES ON DATABASE {} TO {}").format(
                        sql.Identifier(name), sql.Identifier(user)
                    )
                )
        except psycopg.Error as e:
            raise DatabaseError(f"Failed to create database {name}: {e}") from e
        logger.info("Created database %s for %s", name, user)

    def drop_database(self, name: str, user: Optional[str] = None) -> None:
        try:
            with self._connect() as conn, conn.cursor() as cur:
                cur.execute(
                    sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name))
                )
                if user:
                    cur.execute(
                        sql.SQL("DROP ROLE IF EXISTS {}").format(sql.Identifier(user))
                    )
        except psycopg.Error as e:
            raise DatabaseError(f"Failed to drop database {name}: {e}") from e
        logger.info("Dropped database %s", name)

    def list_databases(self) -> List[str]:
        try:
            with self._connect() as conn, conn.cursor() as cur:
                cur.execute("SELECT datname FROM pg_database ORDER BY datname")
                rows = cur.fetchall()
        except psycopg.Error as e:
            raise DatabaseError(f"Failed to list databases: {e}") from e
        return [row[0] for row in rows if row[0] not in _SYSTEM_DATABASES]

    def get_database_info(self, name: str) -> DatabaseInfo:
        """Size, encoding, collation and table count of one database."""
        try:
            with self._connect() as conn, conn.cursor() as cur:
                cur.execute(
                    "SELECT pg_database_size(datname), pg_encoding_to_char(encoding),"
                    " datcollate FROM pg_database WHERE datname = %s",
                    (name,),
                )
                row = cur.fetchone()
            if row is None:
                raise DatabaseNotFound(name)
            with self._connect(name) as conn, conn.cursor() as cur:
                cur.execute(
                    "SELECT count(*) FROM information_schema.tables"
                    " WHERE table_schema NOT IN ('pg_catalog', 'information_schema')"
                )
                (tables,) = cur.fetchone()
        except psycopg.Error as e:
            raise DatabaseError(f"Failed to inspect database {name}: {e}") from e
        return DatabaseInfo(
            name=name,
            size_bytes=row[0],
            encoding=row[1],
            collation=row[2],
            table_count=tables,
        )

    def check_connection(self) -> Dict[str, Union[bool, str]]:
        """Try the admin connection; never raises."""
        try:
            with self._connect() as conn, conn.cursor() as cur:
                cur.execute("SELECT version()")
                (version,) = cur.fetchone()
        except (DatabaseError, psycopg.Error) as e:
            logger.warning("Database connection check failed: %s", e)
            return {"success": False, "message": str(e)}
        return {"success": True, "message": version}

    # -- dumps ---------------------------------------------------------------

    def _tool(self, name: str) -> Path:
        return self.settings.runtime_path / "pgsql" / "bin" / f"{name}{self.settings.exe_suffix}"

    def _client_args(self) -> List[str]:
        s = self.settings
        return ["--host", s.db_host, "--port", str(s.db_port), "--username", s.db_admin_user]

    def _client_env(self) -> Dict[str, str]:
        if self.settings.db_admin_password:
            return {"PGPASSWORD": self.settings.db_admin_password}
        return {}

    def dump_database(self, name: str, path: Path) -> Path:
        """Write a custom-format dump of ``name`` to ``path``."""
        args = [*self._client_args(), "--format=custom", "--file", str(path), name]
        try:
            self.runner.spawn(self._tool("pg_dump"), args, env=self._client_env()).check()
        except ExternalProcessFailure as e:
            path.unlink(missing_ok=True)
            raise DatabaseError(f"Failed to dump database {name}: {e}") from e
        logger.info("Dumped database %s to %s", name, path)
        return path

    def restore_database(self, name: str, path: Path, clean: bool = True) -> None:
        """Load a dump into ``name``, dropping existing objects first when ``clean``."""
        args = [*self._client_args(), "--dbname", name]
        if clean:
            args += ["--clean", "--if-exists"]
        args.append(str(path))
        try:
            self.runner.spawn(self._tool("pg_restore"), args, env=self._client_env()).check()
        except ExternalProcessFailure as e:
            raise DatabaseError(f"Failed to restore database {name}: {e}") from e
        logger.info("Restored database %s from %s", name, path)
