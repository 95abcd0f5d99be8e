from taskscope.intern import InternedStr, Strings


def test_same_string_is_shared():
    strings = Strings()
    first = strings.string("hello")
    second = strings.string_ref("hello")
    assert first is second
    assert len(strings) == 1


def test_distinct_strings_are_distinct():
    strings = Strings()
    a = strings.string("a")
    b = strings.string("b")
    assert a is not b
    assert a != b
    assert len(strings) == 2


def test_interned_str_behaves_like_its_text():
    strings = Strings()
    s = strings.string("tokio::task")
    assert str(s) == "tokio::task"
    assert s == "tokio::task"
    assert len(s) == len("tokio::task")
    assert hash(s) == hash("tokio::task")
    assert repr(s) == "InternedStr('tokio::task')"


def test_string_ref_accepts_interned():
    strings = Strings()
    s = strings.string("x")
    assert strings.string_ref(s) is s


def test_ordering():
    assert sorted([InternedStr("b"), InternedStr("a")]) == [InternedStr("a"), InternedStr("b")]


def test_retain_referenced_drops_unreferenced():
    strings = Strings()
    kept = strings.string("kept")
    strings.string("dropped")
    assert len(strings) == 2
    strings.retain_referenced()
    assert len(strings) == 1
    assert strings.string("kept") is kept


def test_retain_referenced_keeps_all_when_referenced():
    strings = Strings()
    held = [strings.string(name) for name in ("a", "b", "c")]
    strings.retain_referenced()
    assert len(strings) == 3
    assert [strings.string(name) for name in ("a", "b", "c")] == held