"""
Database migrations for gfskeeper.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from gfskeeper import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    This function creates tables if they don't exist and runs any necessary migrations.
    It's designed to be called from multiple Gunicorn workers without conflicts.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        # If no tables exist, create them all
        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except Exception as e:
                # Another worker may have created the schema first
                logger.error(f"Failed to create database schema: {e}")
        else:
            # Tables exist - run migrations
            run_migrations(app, inspector)


def run_migrations(app, inspector=None):
    """
    Run all necessary database migrations.

    Creates tables added after the database was first initialized, then adds
    any nullable model columns missing from existing tables.
    """
    if inspector is None:
        inspector = inspect(db.engine)

    existing_tables = set(inspector.get_table_names())

    # Migration 1: create tables introduced by newer releases (e.g. job_locks)
    missing_tables = [
        table for name, table in db.metadata.tables.items()
        if name not in existing_tables
    ]
    for table in missing_tables:
        logger.info(f"Running migration: Creating table {table.name}")
        try:
            table.create(db.engine, checkfirst=True)
            logger.info(f"Successfully created table {table.name}")
        except Exception as e:
            logger.error(f"Failed to create table {table.name}: {e}")

    # Migration 2: add nullable columns missing from existing tables
    for name, table in db.metadata.tables.items():
        if name not in existing_tables:
            continue

        columns = {col['name'] for col in inspector.get_columns(name)}

        for column in table.columns:
            if column.name in columns or not column.nullable:
                continue

            column_type = column.type.compile(dialect=db.engine.dialect)
            logger.info(f"Running migration: Adding {column.name} column to {name} table")
            try:
                db.session.execute(text(
                    f"ALTER TABLE {name} ADD COLUMN {column.name} {column_type}"
                ))
                db.session.commit()
                logger.info(f"Successfully added {column.name} column")
            except Exception as e:
                logger.error(f"Failed to add {column.name} column: {e}")
                db.session.rollback()
