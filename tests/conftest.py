import os

# nada de tocar o banco de desenvolvimento durante os testes
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTO_OPEN_PERIOD", "0")
