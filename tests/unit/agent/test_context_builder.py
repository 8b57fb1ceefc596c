"""Tests for deterministic, token-budgeted schema context."""

import logging

from agent.context import AliasDictionary, ContextBuilder, ContextBuilderSettings, MRUTableList
from agent.context.builder import estimate_tokens, question_terms
from schema import SchemaManifest
from tests._support.fakes import lab_manifest, lab_tables, make_table


def _builder(aliases=None, **settings):
    return ContextBuilder(
        aliases=AliasDictionary(aliases or {}), settings=ContextBuilderSettings(**settings)
    )


def test_estimate_tokens_is_ceil_of_quarter_length():
    """One token per four characters, rounded up."""
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_question_terms_are_singularized():
    """Short words are dropped and simple plurals folded."""
    terms = question_terms("Show all units of the patients")
    assert terms == {"show", "all", "unit", "the", "patient"}


def test_alias_and_column_matches_rank_tables():
    """Alias hits outrank column overlap, which outranks nothing."""
    builder = _builder({"glucose": {"tables": ["lab_results", "analytes"]}})
    context = builder.build("glucose unit trend", lab_manifest(), MRUTableList(max_size=10))
    assert set(context.table_names[:2]) == {"public.analytes", "public.lab_results"}
    assert context.snapshot_id == lab_manifest().snapshot_id
    assert not context.truncated


def test_named_low_scoring_table_is_force_included():
    """An explicitly named table is present even when ceilings evict better candidates."""
    extra = [make_table("audit_notes", ["id", "body"])]
    manifest = lab_manifest(extra=extra)
    builder = _builder(
        {"lab": {"tables": ["lab_results", "analytes", "patients", "patient_reports"]}},
        max_tables=2,
    )

    context = builder.build(
        "show me lab records from audit_notes", manifest, MRUTableList(max_size=10)
    )

    assert "public.audit_notes" in context.force_included
    assert "public.audit_notes" in context.table_names
    assert len(context.table_names) == 2
    assert context.evicted
    assert context.truncated


def test_same_inputs_produce_the_same_context():
    """The builder is a pure function of question, manifest and MRU snapshot."""
    builder = _builder({"vitamin d": ["lab_results"]})
    manifest = lab_manifest()
    first = builder.build("vitamin d per patient", manifest, MRUTableList(max_size=10))
    second = builder.build("vitamin d per patient", manifest, MRUTableList(max_size=10))
    assert first.render() == second.render()
    assert first.summary() == second.summary()


def test_token_budget_trims_columns_before_tables():
    """Without forced tables the rendered context always fits the budget."""
    wide = make_table("observations", [f"metric_{i}" for i in range(40)])
    manifest = SchemaManifest.build([*lab_tables(), wide], ["public"])
    builder = _builder({"lab": ["lab_results"]}, token_budget=60)

    context = builder.build("lab metrics", manifest, MRUTableList(max_size=10))

    assert context.force_included == ()
    assert context.truncated
    assert context.token_count <= 60
    assert estimate_tokens(context.render()) == context.token_count


def test_forced_headers_over_budget_are_kept_and_logged(caplog):
    """Explicitly named tables survive even a budget they cannot fit."""
    manifest = lab_manifest()
    builder = _builder(token_budget=1)
    with caplog.at_level(logging.WARNING):
        context = builder.build("lab_results and patients", manifest, MRUTableList(max_size=10))
    assert set(context.force_included) == {"public.lab_results", "public.patients"}
    assert set(context.table_names) == {"public.lab_results", "public.patients"}
    assert any("schema_context_over_budget" in r.message for r in caplog.records)


def test_per_table_column_ceiling():
    """Wide tables keep at most max_columns_per_table columns."""
    wide = make_table("observations", [f"metric_{i}" for i in range(10)])
    manifest = SchemaManifest.build([wide], ["public"])
    context = _builder(max_columns_per_table=3).build(
        "metric_7 from observations", manifest, MRUTableList(max_size=10)
    )
    (table,) = context.tables
    assert len(table.columns) == 3
    assert "metric_7" in [column.name for column in table.columns]
    assert context.truncated


def test_recently_used_tables_get_a_boost():
    """The MRU list breaks ties in favour of recent tables."""
    manifest = SchemaManifest.build(
        [make_table("alpha", ["id"]), make_table("beta", ["id"])], ["public"]
    )
    mru = MRUTableList(max_size=10)
    mru.touch(["public.beta"])
    context = _builder(max_tables=1).build("anything", manifest, mru)
    assert context.table_names == ("public.beta",)


def test_build_records_selection_in_mru():
    """Selected tables become the most recent entries."""
    mru = MRUTableList(max_size=10)
    context = _builder().build("lab_results", lab_manifest(), mru)
    assert mru.snapshot()[-1] == context.table_names[0]


def test_foreign_key_hints_follow_kept_columns():
    """Only FKs whose column survived are rendered."""
    context = _builder().build("lab_results report_id", lab_manifest(), MRUTableList(max_size=10))
    lab = next(t for t in context.tables if t.qualified_name == "public.lab_results")
    assert "report_id → public.patient_reports.id" in lab.render()


def test_repeated_builds_with_a_shared_mru_are_equal():
    """Recency affects ordering only, so reported scores do not drift."""
    builder = _builder({"vitamin d": ["lab_results"]})
    manifest = lab_manifest()
    mru = MRUTableList(max_size=10)
    mru.on_snapshot_change(None, manifest)
    first = builder.build("vitamin d per patient", manifest, mru)
    second = builder.build("vitamin d per patient", manifest, mru)
    assert len(mru) > 0
    assert first == second


def test_build_against_a_replaced_snapshot_leaves_mru_alone():
    """A build that raced a schema swap does not reseed the reset list."""
    old_manifest = lab_manifest()
    new_manifest = SchemaManifest.build([make_table("alpha", ["id"])], ["public"])
    mru = MRUTableList(max_size=10)
    mru.on_snapshot_change(None, old_manifest)
    mru.on_snapshot_change(old_manifest, new_manifest)

    _builder().build("lab_results", old_manifest, mru)

    assert mru.snapshot() == ()
