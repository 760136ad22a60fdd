import json
import threading

import pytest

from gastozap.services.ai.finance_extract.contracts import TransactionType
from gastozap.services.rag.index import CategoryEntry, CategoryIndex, expand_categories
from gastozap.services.rag.synonyms import SynonymTable
from gastozap.services.rag.tokens import tokenize

TENANT = "tenant-1"

CATALOG = [
    {
        "id": "cat-food",
        "name": "Alimentação",
        "type": "EXPENSE",
        "subCategories": [
            {"id": "sub-super", "name": "Supermercado"},
            {"id": "sub-rest", "name": "Restaurante"},
        ],
    },
    {
        "id": "cat-transp",
        "name": "Transporte",
        "type": "EXPENSE",
        "sub_categories": [{"id": "sub-fuel", "name": "Combustível"}, {"id": "sub-uber", "name": "Uber"}],
    },
    {"id": "cat-salary", "name": "Salário", "type": "INCOME"},
]


@pytest.fixture
def index():
    idx = CategoryIndex()
    idx.index(TENANT, expand_categories(CATALOG, account_id="acc-1"))
    return idx


def test_expand_categories_flattens_subcategories():
    entries = expand_categories(CATALOG, account_id="acc-1")
    assert len(entries) == 5
    super_entry = entries[0]
    assert super_entry.category_id == "cat-food"
    assert super_entry.sub_category_id == "sub-super"
    assert super_entry.account_id == "acc-1"
    assert super_entry.transaction_type == TransactionType.EXPENSE
    assert entries[-1].sub_category_id is None
    assert entries[-1].transaction_type == TransactionType.INCOME


def test_tokenizer_drops_stopwords_and_short_tokens():
    assert tokenize("Gastei 50 reais no supermercado ontem") == ["supermercado"]
    assert tokenize("Farmácias e remédios") == ["farmacia", "remedio"]


def test_results_are_sorted_and_bounded(index):
    matches = index.query(TENANT, "almoço no restaurante", max_results=2)
    assert 0 < len(matches) <= 2
    scores = [m.score for m in matches]
    assert scores == sorted(scores, reverse=True)
    assert matches[0].sub_category_id == "sub-rest"
    assert all(0.0 <= m.score <= 1.0 for m in matches)


def test_min_score_filters(index):
    assert all(m.score >= 0.5 for m in index.query(TENANT, "gasolina no posto", min_score=0.5))
    assert index.query(TENANT, "gasolina no posto", min_score=0.99) == []


def test_exact_name_scores_above_point_nine(index):
    top = index.query(TENANT, "Supermercado")[0]
    assert top.sub_category_id == "sub-super"
    assert top.score > 0.9
    assert "exact" in top.matched_terms


def test_diacritic_variants_score_the_same(index):
    with_accent = index.query(TENANT, "combustível")
    without_accent = index.query(TENANT, "combustivel")
    assert with_accent[0].score == without_accent[0].score
    assert with_accent[0].sub_category_id == "sub-fuel"


def test_synonyms_link_colloquial_words(index):
    top = index.query(TENANT, "gasolina")[0]
    assert top.sub_category_id == "sub-fuel"
    assert any("->" in term for term in top.matched_terms)


def test_empty_index_and_zero_overlap():
    idx = CategoryIndex()
    assert idx.query("nobody", "supermercado") == []

    idx.index(TENANT, expand_categories(CATALOG))
    assert idx.query(TENANT, "xyzzy qwerty", min_score=0.01) == []
    assert all(m.score == 0.0 for m in idx.query(TENANT, "xyzzy qwerty"))


def test_transaction_type_filter(index):
    income_only = index.query(TENANT, "salário", transaction_type=TransactionType.INCOME)
    assert {m.category_id for m in income_only} == {"cat-salary"}
    expense_only = index.query(TENANT, "salário", transaction_type=TransactionType.EXPENSE)
    assert "cat-salary" not in {m.category_id for m in expense_only}


def test_supermarket_scenario_scores_two_thirds():
    idx = CategoryIndex()
    idx.index(
        TENANT,
        [
            CategoryEntry("food", "Food", sub_category_id="super", sub_category_name="Supermarket"),
            CategoryEntry("transport", "Transport", sub_category_id="fuel", sub_category_name="Fuel"),
        ],
    )
    results = idx.query(TENANT, "spent 56.89 at the supermarket")
    top = results[0]
    assert (top.category_id, top.sub_category_id) == ("food", "super")
    assert top.score == pytest.approx(0.6667, abs=1e-4)
    assert top.matched_terms == ("supermarket",)
    assert all(m.score < top.score for m in results[1:])


def test_learned_keyword_boosts_its_category(index):
    before = index.query(TENANT, "recarga bilhete unico")
    assert not before or before[0].score < 0.5

    index.learn(
        TENANT,
        "bilhete único",
        category_id="cat-transp",
        category_name="Transporte",
        sub_category_id="sub-uber",
        sub_category_name="Uber",
        confidence=1.0,
    )
    after = index.query(TENANT, "recarga bilhete unico")[0]
    assert after.sub_category_id == "sub-uber"
    assert after.score >= 0.75
    assert "learned:bilhete unico" in after.matched_terms

    assert index.forget(TENANT, "Bilhete Único") is True
    assert index.learned(TENANT) == []


def test_relearning_bumps_usage(index):
    index.learn(TENANT, "padoca", category_id="cat-food", category_name="Alimentação")
    again = index.learn(TENANT, "Padoca", category_id="cat-food", category_name="Alimentação", confidence=0.7)
    assert again.usage_count == 2
    assert len(index.learned(TENANT)) == 1


def test_reindex_replaces_snapshot_and_purge(index):
    index.index(TENANT, [CategoryEntry("only", "Pets")])
    assert [e.category_id for e in index.entries(TENANT)] == ["only"]
    assert index.stats()["entries"] == 1

    assert index.purge(TENANT) == 1
    assert not index.is_indexed(TENANT)
    assert index.entries(TENANT) == ()


def test_concurrent_reindex_never_mixes_catalogs():
    idx = CategoryIndex()
    names = ["Mercado", "Feira", "Padaria", "Farmacia"]
    catalog_a = [CategoryEntry(f"a-{i}", name) for i, name in enumerate(names)]
    catalog_b = [CategoryEntry(f"b-{i}", name) for i, name in enumerate(names)]
    idx.index(TENANT, catalog_a)

    stop = threading.Event()
    errors: list[str] = []

    def writer():
        for n in range(300):
            idx.index(TENANT, catalog_b if n % 2 else catalog_a)
        stop.set()

    def reader():
        while True:
            results = idx.query(TENANT, "mercado feira padaria farmacia", max_results=10)
            prefixes = {m.category_id.split("-")[0] for m in results}
            if len(results) != len(names) or len(prefixes) != 1:
                errors.append(f"mixed snapshot: {[m.category_id for m in results]}")
            if stop.is_set():
                return

    readers = [threading.Thread(target=reader) for _ in range(4)]
    for thread in readers:
        thread.start()
    writer()
    for thread in readers:
        thread.join(timeout=10)

    assert errors == []
    assert [e.category_id for e in idx.entries(TENANT)] == [e.category_id for e in catalog_b]


def test_synonym_table_override_file(tmp_path):
    path = tmp_path / "synonyms.json"
    path.write_text(json.dumps({"version": "tenant-2024.2", "synonyms": {"padoca": ["padaria"]}}))

    table = SynonymTable.load(str(path))
    assert table.version == "tenant-2024.2"
    assert table.are_related("padoca", "padaria")
    assert table.are_related("padaria", "padoca")
    assert table.are_related("supermercado", "mercado")

    idx = CategoryIndex()
    assert idx.reload_synonyms(table) == "tenant-2024.2"
    assert idx.synonyms is table
