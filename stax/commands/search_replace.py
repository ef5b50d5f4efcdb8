"""
URL search and replace across the local WordPress database
"""

import fnmatch
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from sqlalchemy import Integer, Table, Text, and_, bindparam, literal, literal_column, not_, or_, select, tuple_, update
from sqlalchemy import types as sqltypes
from sqlalchemy.dialects.mysql import SET
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError, SQLAlchemyError
from sqlalchemy.sql import type_coerce

from stax.commands.payload import PayloadRewriter, expand_variants, from_bytes, to_bytes
from stax.errors import InvalidArgument, RewriteFailed
from stax.models import ReplacementPair, RewriteReport
from stax.utils.cancellation import CancellationToken
from stax.utils.database import list_tables, reflect_table
from stax.utils.security import validate_table_name

BATCH_SIZE = 500

MODE_SINGLE = "single"
MODE_NETWORK = "network"
MODE_SCOPED = "scoped"

# Tables shared by every site of a network
NETWORK_TABLES = ("users", "usermeta", "blogs", "blogmeta", "site", "sitemeta",
                  "signups", "registration_log", "blog_versions")

LOG_TABLE_PATTERNS = ("*log", "*logs", "*_wsal_*", "*actionscheduler_logs")

ALWAYS_SKIPPED_COLUMNS = ("guid",)

TRANSIENT_PREFIXES = ("_transient_", "_site_transient_")
SPAM_STATUSES = ("spam", "trash")

_NUMBERED_TABLE = re.compile(r"^(\d+)_(.+)$")


@dataclass
class SkipOptions:
    logs: bool = False
    transients: bool = False
    spam: bool = False
    exclude_tables: Sequence[str] = ()


@dataclass
class Blog:
    blog_id: int
    domain: str
    path: str

    def url(self, scheme: str = "https") -> str:
        return f"{scheme}://{self.domain}{self.path}".rstrip("/")


@dataclass
class NetworkMap:
    """
    Remote to local domain mapping for a multisite network
    """

    remote_hosts: List[str]
    local_host: str
    explicit: Dict[str, str] = field(default_factory=dict)
    remote_base_path: str = "/"
    local_base_path: str = "/"

    def domain(self, domain: str) -> Optional[str]:
        """
        Returns the local domain for a remote one, or None if it cannot be mapped
        """
        if domain in self.explicit:
            return self.explicit[domain]
        for host in self.remote_hosts:
            if domain == host:
                return self.local_host
            if domain.endswith("." + host):
                return domain[: -len(host)] + self.local_host
        if domain == self.local_host or domain.endswith("." + self.local_host):
            return domain
        return None

    def path(self, path: str) -> str:
        if self.remote_base_path != self.local_base_path and path.startswith(self.remote_base_path):
            return self.local_base_path + path[len(self.remote_base_path):]
        return path


def _base_path(url: str) -> str:
    return urlsplit(url).path.rstrip("/") + "/"


def origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}" if parts.scheme and parts.netloc else url.rstrip("/")


def is_text_column(column) -> bool:
    """
    Character and JSON columns are candidates; enums, sets and binary types are not
    """
    if isinstance(column.type, (sqltypes.Enum, SET)):
        return False
    return isinstance(column.type, (sqltypes.String, sqltypes.JSON))


def _is_disconnect(error: BaseException) -> bool:
    if isinstance(error, DisconnectionError):
        return True
    return isinstance(error, DBAPIError) and bool(error.connection_invalidated)


def plan_pairs(remote_url: str, local_url: str, blogs: Iterable[Blog] = (),
               network: Optional[NetworkMap] = None,
               observed_urls: Iterable[str] = (),
               extra: Iterable[ReplacementPair] = ()) -> List[ReplacementPair]:
    """
    Builds the replacement pairs for a pull

    Args:
        remote_url: Primary URL of the remote site
        local_url: Primary URL of the local site
        blogs: Subsites of a network, empty for single-site installs
        network: Domain mapping used for subsite pairs
        observed_urls: siteurl/home values found in the imported database
        extra: Caller-supplied pairs, applied as given

    Returns:
        List[ReplacementPair]: Pairs with their http, protocol-relative and www variants
    """
    pairs: List[ReplacementPair] = []
    seen = set()

    def add(source: str, target: str, constraint: Optional[str] = None, expand: bool = True):
        variants = expand_variants(source, target) if expand else [(source, target)]
        for old, new in variants:
            if old and old != new and (old, constraint) not in seen:
                seen.add((old, constraint))
                pairs.append(ReplacementPair(old, new, constraint))

    for pair in extra:
        add(pair.from_value, pair.to_value, pair.site_url_constraint, expand=False)

    add(remote_url, local_url)

    local_origin = origin(local_url)
    for url in observed_urls:
        if url and origin(url) != local_origin:
            add(origin(url), local_origin)

    if network is not None:
        scheme = urlsplit(remote_url).scheme or "https"
        local_scheme = urlsplit(local_url).scheme or "https"
        for blog in blogs:
            mapped = network.domain(blog.domain)
            if mapped is None or mapped == blog.domain:
                continue
            add(f"{scheme}://{blog.domain}", f"{local_scheme}://{mapped}")
    return pairs


class URLRewriter:
    """
    Rewrites URLs in every text column of the WordPress tables, keeping
    PHP-serialized and JSON values intact
    """

    def __init__(self, engine: Engine, table_prefix: str = "wp_", batch_size: int = BATCH_SIZE,
                 cancel_token: Optional[CancellationToken] = None,
                 skip_columns: Iterable[str] = (), skip_tables: Iterable[str] = (),
                 verbose: bool = False):
        self.engine = engine
        self.prefix = table_prefix
        self.batch_size = batch_size
        self.cancel_token = cancel_token or CancellationToken()
        self.skip_columns = set(ALWAYS_SKIPPED_COLUMNS) | set(skip_columns)
        self.skip_tables = list(skip_tables)
        self.verbose = verbose

    # Discovery

    def tables(self) -> List[str]:
        return list_tables(self.engine, self.prefix)

    def _local_name(self, table: str) -> str:
        return table[len(self.prefix):]

    def blog_id_of(self, table: str) -> Optional[int]:
        """
        Returns the blog id of a numbered subsite table, 1 for main-site tables
        and None for network-wide tables
        """
        name = self._local_name(table)
        match = _NUMBERED_TABLE.match(name)
        if match:
            return int(match.group(1))
        if name in NETWORK_TABLES:
            return None
        return 1

    def base_name(self, table: str) -> str:
        name = self._local_name(table)
        match = _NUMBERED_TABLE.match(name)
        return match.group(2) if match else name

    def is_network(self) -> bool:
        return f"{self.prefix}blogs" in self.tables()

    def list_blogs(self) -> List[Blog]:
        """
        Reads the subsites of a network from the blogs table
        """
        name = f"{self.prefix}blogs"
        if name not in self.tables():
            return []
        table = reflect_table(self.engine, name)
        query = select(table.c.blog_id, table.c.domain, table.c.path).order_by(table.c.blog_id)
        if "deleted" in table.c:
            query = query.where(or_(table.c.deleted == 0, table.c.deleted.is_(None)))
        with self.engine.connect() as conn:
            return [Blog(int(row[0]), row[1], row[2] or "/") for row in conn.execute(query)]

    def network_domains(self) -> List[str]:
        name = f"{self.prefix}site"
        if name not in self.tables():
            return []
        table = reflect_table(self.engine, name)
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(select(table.c.domain)) if row[0]]

    def observed_urls(self) -> List[str]:
        """
        Returns the siteurl and home values of the main site
        """
        name = f"{self.prefix}options"
        if name not in self.tables():
            return []
        table = reflect_table(self.engine, name)
        query = select(table.c.option_value).where(table.c.option_name.in_(["siteurl", "home"]))
        with self.engine.connect() as conn:
            return [from_bytes(to_bytes(row[0])) for row in conn.execute(query) if row[0]]

    def tables_for(self, mode: str, blog_id: Optional[int] = None) -> List[str]:
        """
        Lists the tables a rewrite in the given mode touches

        Args:
            mode: single, network or scoped
            blog_id: Subsite for scoped mode

        Returns:
            List[str]: Table names
        """
        tables = self.tables()
        if mode in (MODE_SINGLE, MODE_NETWORK):
            return tables
        if mode == MODE_SCOPED:
            if blog_id is None:
                raise InvalidArgument("blog_id", "scoped rewrites need a subsite")
            return [table for table in tables if self.blog_id_of(table) == blog_id]
        raise InvalidArgument("mode", f"unknown rewrite mode '{mode}'")

    def skip_reason(self, table: str, skip: SkipOptions) -> Optional[str]:
        for pattern in list(skip.exclude_tables) + self.skip_tables:
            if fnmatch.fnmatchcase(table, pattern) or fnmatch.fnmatchcase(self._local_name(table), pattern):
                return "excluded"
        if skip.logs and any(fnmatch.fnmatchcase(table, pattern) for pattern in LOG_TABLE_PATTERNS):
            return "log table"
        return None

    def find_blog(self, site_url: str, blogs: Sequence[Blog]) -> Blog:
        """
        Finds the subsite whose URL matches site_url, ignoring the scheme
        """
        parts = urlsplit(site_url if "//" in site_url else f"//{site_url}")
        wanted = (parts.netloc, parts.path.rstrip("/") + "/")
        for blog in blogs:
            if (blog.domain, blog.path.rstrip("/") + "/") == wanted:
                return blog
        raise InvalidArgument("site_url", f"no subsite matches {site_url}")

    # Rewriting

    def _row_filter(self, table: Table, skip: SkipOptions):
        base = self.base_name(table.name)
        if skip.transients:
            if base == "options" and "option_name" in table.c:
                return not_(or_(*[table.c.option_name.startswith(p, autoescape=True) for p in TRANSIENT_PREFIXES]))
            if base == "sitemeta" and "meta_key" in table.c:
                return not_(or_(*[table.c.meta_key.startswith(p, autoescape=True) for p in TRANSIENT_PREFIXES]))
        if skip.spam and base == "comments" and "comment_approved" in table.c:
            return table.c.comment_approved.not_in(SPAM_STATUSES)
        return None

    def _key_columns(self, table: Table) -> List:
        keys = list(table.primary_key.columns)
        if keys:
            return keys
        if self.engine.dialect.name == "sqlite":
            return [literal_column("rowid", Integer)]
        return []

    def rewrite_table(self, name: str, rewriter: PayloadRewriter, skip: Optional[SkipOptions] = None,
                      dry_run: bool = False) -> RewriteReport:
        """
        Rewrites one table inside a single transaction, retrying once after a dropped connection

        Raises:
            RewriteFailed: If the table fails twice or hits a non-constraint database error
        """
        skip = skip or SkipOptions()
        for attempt in (1, 2):
            try:
                return self._rewrite_table_once(name, rewriter, skip, dry_run)
            except IntegrityError as e:
                report = RewriteReport(tables_scanned=1)
                report.failed_tables[name] = str(e.orig if e.orig is not None else e)
                report.warnings.append(f"{name}: constraint violation, table left unchanged ({report.failed_tables[name]})")
                print(f"⚠️ {name}: constraint violation, table skipped")
                return report
            except SQLAlchemyError as e:
                if _is_disconnect(e) and attempt == 1:
                    print(f"⚠️ Lost the database connection while rewriting {name}, retrying")
                    continue
                raise RewriteFailed(name, e) from e
        raise RewriteFailed(name, RuntimeError("connection lost twice"))

    def _rewrite_table_once(self, name: str, rewriter: PayloadRewriter, skip: SkipOptions,
                            dry_run: bool) -> RewriteReport:
        validate_table_name(name)
        report = RewriteReport(tables_scanned=1)
        table = reflect_table(self.engine, name)

        columns = [c for c in table.columns
                   if is_text_column(c) and not c.primary_key and c.name not in self.skip_columns]
        if not columns:
            return report

        keys = self._key_columns(table)
        if not keys:
            report.warnings.append(f"{name}: no primary key, table skipped")
            print(f"⚠️ {name} has no primary key; skipping")
            return report

        # JSON columns are read and written as raw text
        values = [type_coerce(c, Text) if isinstance(c.type, sqltypes.JSON) else c for c in columns]
        terms = rewriter.search_terms
        criteria = [or_(*[value.contains(term, autoescape=True) for value in values for term in terms])]
        row_filter = self._row_filter(table, skip)
        if row_filter is not None:
            criteria.append(row_filter)

        key_params = [bindparam(f"_stax_k{i}") for i in range(len(keys))]
        key_match = and_(*[key == param for key, param in zip(keys, key_params)])

        if self.verbose:
            print(f"🔍 Scanning {name} ({', '.join(c.name for c in columns)})")

        connect = self.engine.connect if dry_run else self.engine.begin
        with connect() as conn:
            last: Optional[Tuple[Any, ...]] = None
            while True:
                self.cancel_token.raise_if_cancelled("URL rewrite")
                query = select(*keys, *values).where(*criteria)
                if last is not None:
                    if len(keys) == 1:
                        query = query.where(keys[0] > last[0])
                    else:
                        query = query.where(tuple_(*keys) > tuple_(*[literal(v) for v in last]))
                rows = conn.execute(query.order_by(*keys).limit(self.batch_size)).all()
                if not rows:
                    break

                updates: Dict[Tuple[str, ...], List[Dict[str, Any]]] = {}
                for row in rows:
                    key = tuple(row[: len(keys)])
                    changed: Dict[str, Any] = {}
                    for column, original in zip(columns, row[len(keys):]):
                        if original is None:
                            continue
                        outcome = rewriter.rewrite(to_bytes(original))
                        if outcome.warning:
                            report.warnings.append(f"{name}.{column.name} {list(key)}: {outcome.warning}")
                        if outcome.changed:
                            changed[column.name] = outcome.value if isinstance(original, bytes) else from_bytes(outcome.value)
                            report.count(name, column.name)
                    if changed:
                        report.rows_changed += 1
                        params = {f"_stax_k{i}": value for i, value in enumerate(key)}
                        params.update({f"_stax_v_{col}": value for col, value in changed.items()})
                        updates.setdefault(tuple(sorted(changed)), []).append(params)

                if not dry_run:
                    for changed_columns, batch in updates.items():
                        statement = update(table).where(key_match).values(
                            {col: bindparam(f"_stax_v_{col}", type_=Text) for col in changed_columns}
                        )
                        conn.execute(statement, batch)

                last = tuple(rows[-1][: len(keys)])
                if len(rows) < self.batch_size:
                    break

        if report.total and self.verbose:
            verb = "would change" if dry_run else "changed"
            print(f"   - {name}: {verb} {report.total} values")
        return report

    def rewrite(self, pairs: Sequence[ReplacementPair], skip: Optional[SkipOptions] = None,
                dry_run: bool = False, blogs: Optional[Sequence[Blog]] = None) -> RewriteReport:
        """
        Applies replacement pairs to the database

        Pairs without a site constraint run once over every table (all
        subsite and shared tables on a network); constrained pairs only touch
        the tables of the matching subsite.

        Args:
            pairs: Ordered replacement pairs
            skip: Table and row skip lists
            dry_run: Count matches without writing
            blogs: Known subsites, read from the database when omitted

        Returns:
            RewriteReport: Per-column counts, warnings and failed tables
        """
        skip = skip or SkipOptions()
        report = RewriteReport()
        if not pairs:
            return report

        groups: Dict[Optional[str], List[Tuple[str, str]]] = {}
        for pair in pairs:
            groups.setdefault(pair.site_url_constraint, []).append((pair.from_value, pair.to_value))

        for constraint, group in groups.items():
            if constraint is None:
                mode = MODE_NETWORK if self.is_network() else MODE_SINGLE
                tables = self.tables_for(mode)
            else:
                if blogs is None:
                    blogs = self.list_blogs()
                blog = self.find_blog(constraint, blogs) if blogs else Blog(1, "", "/")
                tables = self.tables_for(MODE_SCOPED, blog.blog_id)

            rewriter = PayloadRewriter(group)
            for table in tables:
                reason = self.skip_reason(table, skip)
                if reason:
                    if self.verbose:
                        print(f"ℹ️ Skipping {table} ({reason})")
                    continue
                report.merge(self.rewrite_table(table, rewriter, skip, dry_run))
        return report

    def remap_network(self, network: NetworkMap, dry_run: bool = False) -> RewriteReport:
        """
        Points the blogs and site tables at the local domains
        """
        report = RewriteReport()
        connect = self.engine.connect if dry_run else self.engine.begin
        tables = self.tables()
        with connect() as conn:
            for base, key in (("blogs", "blog_id"), ("site", "id")):
                name = f"{self.prefix}{base}"
                if name not in tables:
                    continue
                table = reflect_table(self.engine, name)
                rows = conn.execute(select(table.c[key], table.c.domain, table.c.path)).all()
                for row_key, domain, path in rows:
                    mapped = network.domain(domain)
                    if mapped is None:
                        report.warnings.append(
                            f"{name} {row_key}: domain {domain} has no local mapping; add it to network.sites"
                        )
                        continue
                    new_path = network.path(path or "/")
                    values = {}
                    if mapped != domain:
                        values["domain"] = mapped
                        report.count(name, "domain")
                    if new_path != path:
                        values["path"] = new_path
                        report.count(name, "path")
                    if values:
                        report.rows_changed += 1
                        if not dry_run:
                            conn.execute(update(table).where(table.c[key] == row_key).values(**values))
        return report

    def run(self, remote_url: str, local_url: str, network_sites: Iterable[Dict[str, Any]] = (),
            extra_pairs: Iterable[ReplacementPair] = (), skip: Optional[SkipOptions] = None,
            dry_run: bool = False) -> RewriteReport:
        """
        Rewrites a freshly imported database from remote_url to local_url,
        including multisite domain remapping when the database is a network
        """
        blogs = self.list_blogs()
        network = None
        if blogs:
            remote_hosts = []
            for host in [urlsplit(remote_url).netloc] + self.network_domains():
                if host and host not in remote_hosts:
                    remote_hosts.append(host)
            explicit = {site["remote_domain"]: site["local_domain"] for site in network_sites
                        if site.get("remote_domain") and site.get("local_domain")}
            network = NetworkMap(remote_hosts, urlsplit(local_url).netloc, explicit,
                                 _base_path(remote_url), _base_path(local_url))

        pairs = plan_pairs(remote_url, local_url, blogs, network, self.observed_urls(), extra_pairs)

        mode = MODE_NETWORK if blogs else MODE_SINGLE
        prefix = "🔄 Dry run: would replace" if dry_run else "🔄 Replacing"
        print(f"{prefix} URLs ({mode}): {remote_url} -> {local_url}")
        for pair in pairs:
            scope = f" [{pair.site_url_constraint}]" if pair.site_url_constraint else ""
            print(f"   - {pair.from_value} -> {pair.to_value}{scope}")

        report = self.rewrite(pairs, skip, dry_run, blogs)
        if network is not None:
            report.merge(self.remap_network(network, dry_run))

        for warning in report.warnings:
            print(f"⚠️ {warning}")
        verb = "would be changed" if dry_run else "changed"
        print(f"✅ URL replacement completed: {report.total} values {verb} in {report.rows_changed} rows")
        return report
