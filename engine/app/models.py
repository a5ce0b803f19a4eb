from sqlalchemy import Table, Column, Integer, String, MetaData, DateTime, Text, BigInteger, Boolean
from sqlalchemy.sql import func

metadata = MetaData()

job_runs = Table(
    "job_runs",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("job_name", String(200), index=True, nullable=False),
    Column("target", String(200), nullable=False),
    Column("databases", Text),
    Column("status", String(50), nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("finished_at", DateTime(timezone=True), nullable=False),
    Column("size_bytes", BigInteger, default=0),
    Column("artifact_path", String(500)),
    Column("checksum", String(128)),
    Column("error", Text),
    Column("created_at", DateTime, server_default=func.now()),
)

uploads = Table(
    "uploads",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("job_name", String(200), index=True, nullable=False),
    Column("storage", String(50), nullable=False),
    Column("remote_path", String(500)),
    Column("success", Boolean, nullable=False),
    Column("attempts", Integer, default=1),
    Column("error", String(500)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
