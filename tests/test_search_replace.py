"""
Tests for database-wide URL rewriting on a SQLite WordPress schema.
"""

import sqlite3

import pytest

from stax.commands.search_replace import (
    Blog,
    NetworkMap,
    SkipOptions,
    URLRewriter,
    plan_pairs,
)
from stax.errors import InvalidArgument
from stax.models import ReplacementPair
from tests.conftest import execute, rows

REMOTE = "https://example.wpengine.com"
LOCAL = "https://mysite.ddev.site"


@pytest.fixture
def single_site(wp_engine):
    execute(wp_engine, "INSERT INTO wp_options (option_name, option_value) VALUES ('siteurl', :v)", v=REMOTE)
    execute(wp_engine, "INSERT INTO wp_options (option_name, option_value) VALUES ('home', :v)", v=REMOTE)
    execute(wp_engine, "INSERT INTO wp_options (option_name, option_value) VALUES ('widget', :v)",
            v='a:1:{s:3:"url";s:28:"https://example.wpengine.com";}')
    execute(wp_engine, "INSERT INTO wp_posts (ID, post_title, post_content, guid) VALUES (1, 'Hello', :c, :g)",
            c='<a href="https://example.wpengine.com/about">About</a>', g="https://example.wpengine.com/?p=1")
    return wp_engine


def option(engine, name, table="wp_options"):
    return rows(engine, f"SELECT option_value FROM {table} WHERE option_name = :n", n=name)[0][0]


def test_single_site_rewrite(single_site):
    report = URLRewriter(single_site).run(REMOTE, LOCAL)

    assert option(single_site, "siteurl") == "https://mysite.ddev.site"
    assert option(single_site, "home") == "https://mysite.ddev.site"
    assert option(single_site, "widget") == 'a:1:{s:3:"url";s:24:"https://mysite.ddev.site";}'
    content, guid = rows(single_site, "SELECT post_content, guid FROM wp_posts WHERE ID = 1")[0]
    assert content == '<a href="https://mysite.ddev.site/about">About</a>'
    assert guid == "https://example.wpengine.com/?p=1"

    assert report.per_column == {"wp_options.option_value": 3, "wp_posts.post_content": 1}
    assert report.rows_changed == 4
    assert report.warnings == []


def test_second_run_changes_nothing(single_site):
    rewriter = URLRewriter(single_site)
    rewriter.run(REMOTE, LOCAL)
    again = rewriter.run(REMOTE, LOCAL)
    assert again.total == 0
    assert option(single_site, "siteurl") == "https://mysite.ddev.site"


def test_dry_run_counts_without_writing(single_site):
    report = URLRewriter(single_site).run(REMOTE, LOCAL, dry_run=True)
    assert report.total == 4
    assert option(single_site, "siteurl") == REMOTE


def test_small_batches(wp_engine):
    for i in range(1, 8):
        execute(wp_engine, "INSERT INTO wp_posts (ID, post_content) VALUES (:i, :c)",
                i=i, c=f"https://example.wpengine.com/post-{i}")
    report = URLRewriter(wp_engine, batch_size=2).rewrite(plan_pairs(REMOTE, LOCAL))
    assert report.rows_changed == 7
    assert [r[0] for r in rows(wp_engine, "SELECT post_content FROM wp_posts ORDER BY ID")] == [
        f"https://mysite.ddev.site/post-{i}" for i in range(1, 8)
    ]


def test_table_without_primary_key_uses_rowid(wp_engine):
    execute(wp_engine, "INSERT INTO wp_activity_log (entry) VALUES ('visited https://example.wpengine.com/')")
    URLRewriter(wp_engine).rewrite(plan_pairs(REMOTE, LOCAL))
    assert rows(wp_engine, "SELECT entry FROM wp_activity_log") == [("visited https://mysite.ddev.site/",)]


def test_table_without_usable_key_is_skipped(wp_engine, monkeypatch):
    execute(wp_engine, "INSERT INTO wp_activity_log (entry) VALUES ('https://example.wpengine.com')")
    rewriter = URLRewriter(wp_engine)
    monkeypatch.setattr(rewriter, "_key_columns", lambda table: [])

    report = rewriter.rewrite(plan_pairs(REMOTE, LOCAL))

    assert "wp_activity_log: no primary key, table skipped" in report.warnings
    assert rows(wp_engine, "SELECT entry FROM wp_activity_log") == [("https://example.wpengine.com",)]


def test_composite_primary_key(wp_engine, db_path):
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE wp_term_links (a INTEGER, b INTEGER, link TEXT, PRIMARY KEY (a, b))")
        conn.executemany("INSERT INTO wp_term_links VALUES (?, ?, ?)",
                         [(1, 1, REMOTE), (1, 2, REMOTE + "/x"), (2, 1, REMOTE + "/y")])
    URLRewriter(wp_engine, batch_size=1).rewrite(plan_pairs(REMOTE, LOCAL))
    assert rows(wp_engine, "SELECT link FROM wp_term_links ORDER BY a, b") == [
        (LOCAL,), (LOCAL + "/x",), (LOCAL + "/y",)
    ]


def test_json_column(wp_engine, db_path):
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE wp_settings (id INTEGER PRIMARY KEY, data JSON)")
        conn.execute("INSERT INTO wp_settings VALUES (1, ?)", ('{"logo": "https://example.wpengine.com/logo.png"}',))
    URLRewriter(wp_engine).rewrite(plan_pairs(REMOTE, LOCAL))
    assert rows(wp_engine, "SELECT data FROM wp_settings") == [('{"logo": "https://mysite.ddev.site/logo.png"}',)]


def test_constraint_violation_leaves_table_and_continues(wp_engine, db_path):
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE wp_redirects (id INTEGER PRIMARY KEY, target VARCHAR(200) UNIQUE)")
        conn.executemany("INSERT INTO wp_redirects (target) VALUES (?)", [(REMOTE,), (LOCAL,)])
    execute(wp_engine, "INSERT INTO wp_options (option_name, option_value) VALUES ('siteurl', :v)", v=REMOTE)

    report = URLRewriter(wp_engine).rewrite(plan_pairs(REMOTE, LOCAL))

    assert list(report.failed_tables) == ["wp_redirects"]
    assert any(w.startswith("wp_redirects: constraint violation") for w in report.warnings)
    assert rows(wp_engine, "SELECT target FROM wp_redirects ORDER BY id") == [(REMOTE,), (LOCAL,)]
    assert option(wp_engine, "siteurl") == LOCAL


def test_skip_transients(wp_engine):
    execute(wp_engine, "INSERT INTO wp_options (option_name, option_value) VALUES ('siteurl', :v)", v=REMOTE)
    execute(wp_engine, "INSERT INTO wp_options (option_name, option_value) VALUES ('_transient_feed', :v)", v=REMOTE)
    execute(wp_engine, "INSERT INTO wp_options (option_name, option_value) VALUES ('_site_transient_x', :v)", v=REMOTE)

    URLRewriter(wp_engine).rewrite(plan_pairs(REMOTE, LOCAL), SkipOptions(transients=True))

    assert option(wp_engine, "siteurl") == LOCAL
    assert option(wp_engine, "_transient_feed") == REMOTE
    assert option(wp_engine, "_site_transient_x") == REMOTE


def test_skip_spam(wp_engine):
    for i, status in enumerate(["1", "spam", "trash", "0"], start=1):
        execute(wp_engine, "INSERT INTO wp_comments (comment_ID, comment_author_url, comment_approved) "
                           "VALUES (:i, :u, :s)", i=i, u=REMOTE, s=status)

    URLRewriter(wp_engine).rewrite(plan_pairs(REMOTE, LOCAL), SkipOptions(spam=True))

    assert rows(wp_engine, "SELECT comment_approved, comment_author_url FROM wp_comments ORDER BY comment_ID") == [
        ("1", LOCAL), ("spam", REMOTE), ("trash", REMOTE), ("0", LOCAL),
    ]


@pytest.mark.parametrize("skip,expected", [
    (SkipOptions(logs=True), REMOTE),
    (SkipOptions(exclude_tables=["wp_activity_log"]), REMOTE),
    (SkipOptions(exclude_tables=["activity_*"]), REMOTE),
    (SkipOptions(), LOCAL),
])
def test_table_skips(wp_engine, skip, expected):
    execute(wp_engine, "INSERT INTO wp_activity_log (entry) VALUES (:v)", v=REMOTE)
    URLRewriter(wp_engine).rewrite(plan_pairs(REMOTE, LOCAL), skip)
    assert rows(wp_engine, "SELECT entry FROM wp_activity_log") == [(expected,)]


def test_configured_skip_columns(single_site):
    URLRewriter(single_site, skip_columns=["post_content"]).run(REMOTE, LOCAL)
    assert rows(single_site, "SELECT post_content FROM wp_posts")[0][0].startswith('<a href="https://example.')


# Multisite

@pytest.fixture
def network(network_engine):
    engine = network_engine
    execute(engine, "INSERT INTO wp_blogs (blog_id, site_id, domain, path) VALUES (1, 1, 'example.com', '/')")
    execute(engine, "INSERT INTO wp_blogs (blog_id, site_id, domain, path) VALUES (2, 1, 'sub.example.com', '/')")
    execute(engine, "INSERT INTO wp_site (id, domain, path) VALUES (1, 'example.com', '/')")
    execute(engine, "INSERT INTO wp_options (option_name, option_value) VALUES ('siteurl', 'https://example.com')")
    execute(engine, "INSERT INTO wp_2_options (option_name, option_value) VALUES ('siteurl', 'https://sub.example.com')")
    execute(engine, "INSERT INTO wp_2_options (option_name, option_value) VALUES ('home', 'https://sub.example.com')")
    execute(engine, "INSERT INTO wp_users (ID, user_login, user_email, user_url) "
                    "VALUES (1, 'admin', 'admin@example.com', 'https://example.com/author')")
    return engine


def test_network_rewrite(network):
    report = URLRewriter(network).run("https://example.com", "https://example.ddev.site")

    assert rows(network, "SELECT blog_id, domain, path FROM wp_blogs ORDER BY blog_id") == [
        (1, "example.ddev.site", "/"),
        (2, "sub.example.ddev.site", "/"),
    ]
    assert rows(network, "SELECT domain FROM wp_site") == [("example.ddev.site",)]
    assert option(network, "siteurl") == "https://example.ddev.site"
    assert option(network, "siteurl", "wp_2_options") == "https://sub.example.ddev.site"
    assert option(network, "home", "wp_2_options") == "https://sub.example.ddev.site"

    user_url, email = rows(network, "SELECT user_url, user_email FROM wp_users")[0]
    assert user_url == "https://example.ddev.site/author"
    assert email == "admin@example.com"
    assert report.per_column["wp_users.user_url"] == 1


def test_network_explicit_domain_mapping(network):
    execute(network, "INSERT INTO wp_blogs (blog_id, site_id, domain, path) VALUES (3, 1, 'brand.org', '/')")
    sites = [{"remote_domain": "brand.org", "local_domain": "brand.ddev.site"}]

    report = URLRewriter(network).run("https://example.com", "https://example.ddev.site", network_sites=sites)

    assert rows(network, "SELECT domain FROM wp_blogs WHERE blog_id = 3") == [("brand.ddev.site",)]
    assert report.warnings == []


def test_network_unmapped_domain_warns(network):
    execute(network, "INSERT INTO wp_blogs (blog_id, site_id, domain, path) VALUES (3, 1, 'brand.org', '/')")
    report = URLRewriter(network).run("https://example.com", "https://example.ddev.site")
    assert rows(network, "SELECT domain FROM wp_blogs WHERE blog_id = 3") == [("brand.org",)]
    assert any("brand.org has no local mapping" in w for w in report.warnings)


def test_scoped_pair_touches_one_subsite(network):
    execute(network, "INSERT INTO wp_posts (ID, post_content) VALUES (1, 'https://cdn.example.com/a.png')")
    execute(network, "INSERT INTO wp_2_posts (ID, post_content) VALUES (1, 'https://cdn.example.com/a.png')")
    pair = ReplacementPair("https://cdn.example.com", "https://cdn.local.test", "https://sub.example.com")

    URLRewriter(network).rewrite([pair])

    assert rows(network, "SELECT post_content FROM wp_posts") == [("https://cdn.example.com/a.png",)]
    assert rows(network, "SELECT post_content FROM wp_2_posts") == [("https://cdn.local.test/a.png",)]


def test_scoped_pair_for_unknown_site(network):
    pair = ReplacementPair("https://a.test", "https://b.test", "https://nowhere.example.com")
    with pytest.raises(InvalidArgument):
        URLRewriter(network).rewrite([pair])


def test_table_classification(network):
    rewriter = URLRewriter(network)
    assert rewriter.is_network()
    assert rewriter.blog_id_of("wp_2_options") == 2
    assert rewriter.blog_id_of("wp_options") == 1
    assert rewriter.blog_id_of("wp_users") is None
    assert rewriter.base_name("wp_2_posts") == "posts"
    assert set(rewriter.tables_for("scoped", 2)) == {"wp_2_options", "wp_2_posts"}
    with pytest.raises(InvalidArgument):
        rewriter.tables_for("scoped")


@pytest.mark.parametrize("domain,expected", [
    ("example.com", "example.ddev.site"),
    ("sub.example.com", "sub.example.ddev.site"),
    ("shop.example.org", "shop.local.test"),
    ("example.ddev.site", "example.ddev.site"),
    ("other.net", None),
])
def test_network_map_domain(domain, expected):
    mapping = NetworkMap(["example.com"], "example.ddev.site", {"shop.example.org": "shop.local.test"})
    assert mapping.domain(domain) == expected


def test_network_map_path():
    mapping = NetworkMap(["example.com"], "example.ddev.site", remote_base_path="/", local_base_path="/wp/")
    assert mapping.path("/blog/") == "/wp/blog/"


def test_plan_pairs_orders_extra_first_and_adds_subsites():
    network = NetworkMap(["example.com"], "example.ddev.site")
    blogs = [Blog(1, "example.com", "/"), Blog(2, "sub.example.com", "/")]
    extra = [ReplacementPair("https://media.example.com", "https://example.com/media")]

    pairs = plan_pairs("https://example.com", "https://example.ddev.site", blogs, network,
                       observed_urls=["http://old.example.net"], extra=extra)
    sources = [p.from_value for p in pairs]

    assert sources[0] == "https://media.example.com"
    assert sources[1] == "https://example.com"
    assert "http://old.example.net" in sources
    assert "https://sub.example.com" in sources
    assert "//sub.example.com" in sources
    assert len(sources) == len(set(sources))
