from migrations.sqlite_to_postgres.cli import app

app()
