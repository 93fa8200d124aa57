import unicodedata

from educonnect.models import Subject
from educonnect.timetable_import import SubjectResolver


def test_exact_name_and_code(db, seed):
    resolver = SubjectResolver(db)
    assert resolver.resolve("Toán") == "S01"
    assert resolver.resolve("VAN") == "S02"


def test_case_insensitive_match(db, seed):
    resolver = SubjectResolver(db)
    assert resolver.resolve("toán") == "S01"
    assert resolver.resolve("ly") == "S03"


def test_substring_match(db, seed):
    resolver = SubjectResolver(db)
    assert resolver.resolve("văn") == "S02"


def test_exact_match_wins_over_substring(db, seed):
    db.add(Subject(id="S09", name="Toán nâng cao", code="TOANNC"))
    db.commit()
    resolver = SubjectResolver(db)
    assert resolver.resolve("Toán") == "S01"
    assert resolver.resolve("nâng cao") == "S09"


def test_ambiguous_substring_prefers_shortest_name(db, seed):
    db.add(Subject(id="S09", name="Toán nâng cao", code="TOANNC"))
    db.commit()
    assert SubjectResolver(db).resolve("to") == "S01"


def test_unknown_and_blank(db, seed):
    resolver = SubjectResolver(db)
    assert resolver.resolve("Âm nhạc") is None
    assert resolver.resolve("") is None
    assert resolver.resolve(None) is None


def test_lookups_are_memoized_per_run(db, seed):
    resolver = SubjectResolver(db)
    assert resolver.resolve("Toán") == "S01"
    db.add(Subject(id="S10", name="Toán", code="TOAN2"))
    db.commit()
    # subject list is loaded once per import run
    assert resolver.resolve("Toán") == "S01"
    assert resolver.exists("S01")
    assert not resolver.exists("S10")


def test_decomposed_names_match(db, seed):
    db.add(Subject(id="S10", name=unicodedata.normalize("NFD", "Địa lý"), code="DIA"))
    db.commit()
    resolver = SubjectResolver(db)
    assert resolver.resolve(unicodedata.normalize("NFD", "Ngữ văn")) == "S02"
    assert resolver.resolve(unicodedata.normalize("NFD", "ngữ")) == "S02"
    assert resolver.resolve("Địa lý") == "S10"
