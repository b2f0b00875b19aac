import re
import sqlite3
from collections.abc import Iterable
from pathlib import Path

from ...config_manager import get_config_manager
from ...logger import get_logger
from ...models import DisplayRecord
from ...utils import is_valid_url

logger = get_logger(__name__)

_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")


class DisplayStoreError(RuntimeError):
    """A storage operation failed and was rolled back."""


def clean_manifest_urls(urls: str | Iterable[str]) -> list[str]:
    """Trim, validate and de-duplicate manifest URLs, keeping first-seen order.

    Accepts either a block of text (one URL per line) or an iterable of strings.
    """
    lines = _LINE_SPLIT_RE.split(urls) if isinstance(urls, str) else urls
    cleaned: dict[str, None] = {}
    for line in lines:
        url = (line or "").strip()
        if not url:
            continue
        if not is_valid_url(url):
            logger.debug("Dropping invalid manifest URL: %s", url)
            continue
        cleaned.setdefault(url, None)
    return list(cleaned)


class DisplayStore:
    """SQLite storage for the manifest URL pool and the published display set."""

    def __init__(self, db_path: str | Path | None = None):
        """Open (and create if needed) the database at `db_path`.

        Without a path the location comes from `paths.database` in config.json.
        """
        self.db_path = Path(db_path) if db_path else get_config_manager().get_database_path()
        self._ensure_db_dir()
        self._init_db()

    def _ensure_db_dir(self):
        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _get_conn(self):
        return sqlite3.connect(self.db_path)

    def _init_db(self):
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise DisplayStoreError(f"Could not open {self.db_path}: {e}") from e
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS manifest_urls (
                    url TEXT NOT NULL UNIQUE
                )
            """)
            # `id` order is publication order.
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS display_images (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    image_url TEXT NOT NULL,
                    manifest_url TEXT NOT NULL,
                    related_url TEXT NOT NULL,
                    label VARCHAR(512) NOT NULL
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise DisplayStoreError(f"Could not initialize {self.db_path}: {e}") from e
        finally:
            conn.close()

    def _replace_all(self, table: str, columns: tuple[str, ...], rows: list[tuple]) -> None:
        """Delete every row of `table` and insert `rows` inside one transaction."""
        placeholders = ", ".join("?" for _ in columns)
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise DisplayStoreError(f"Could not open {self.db_path}: {e}") from e
        try:
            with conn:
                conn.execute(f"DELETE FROM {table}")
                if rows:
                    conn.executemany(f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})", rows)
        except sqlite3.Error as e:
            logger.error("Failed to replace %s (rolled back): %s", table, e)
            raise DisplayStoreError(f"Could not replace {table}: {e}") from e
        finally:
            conn.close()

    def _select(self, sql: str, row_factory=None) -> list:
        """Run a read query; sqlite errors surface as DisplayStoreError."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise DisplayStoreError(f"Could not open {self.db_path}: {e}") from e
        conn.row_factory = row_factory
        try:
            return conn.execute(sql).fetchall()
        except sqlite3.Error as e:
            logger.error("Read failed on %s: %s", self.db_path, e)
            raise DisplayStoreError(f"Could not read {self.db_path}: {e}") from e
        finally:
            conn.close()

    def get_manifest_urls(self) -> list[str]:
        """Return the manifest URL pool."""
        return [row[0] for row in self._select("SELECT url FROM manifest_urls ORDER BY rowid")]

    def count_manifest_urls(self) -> int:
        ((count,),) = self._select("SELECT COUNT(*) FROM manifest_urls")
        return int(count)

    def replace_manifest_urls(self, urls: str | Iterable[str]) -> int:
        """Replace the whole pool with the valid, unique entries of `urls`.

        Returns the number of URLs stored. On failure the previous pool is kept
        and DisplayStoreError is raised.
        """
        cleaned = clean_manifest_urls(urls)
        self._replace_all("manifest_urls", ("url",), [(url,) for url in cleaned])
        logger.info("Manifest URL pool updated with %s entries", len(cleaned))
        return len(cleaned)

    def get_display_images(self) -> list[DisplayRecord]:
        """Return the currently published display set in publication order."""
        rows = self._select(
            "SELECT image_url, manifest_url, related_url, label FROM display_images ORDER BY id",
            row_factory=sqlite3.Row,
        )
        return [DisplayRecord(**dict(row)) for row in rows]

    def replace_display_images(self, records: Iterable[DisplayRecord]) -> int:
        """Atomically swap the published display set for `records`.

        Readers on other connections keep seeing the previous set until the
        transaction commits; on error it is rolled back and DisplayStoreError raised.
        """
        rows = [(r.image_url, r.manifest_url, r.related_url, r.label) for r in records]
        self._replace_all("display_images", ("image_url", "manifest_url", "related_url", "label"), rows)
        return len(rows)
