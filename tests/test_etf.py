# tests/test_etf.py
"""
Tests for the external term format decoder, encoder and term printer.
"""

import struct
import zlib

import pytest

from beam_spy.errors import EtfDecodeError
from beam_spy.etf import (
    Atom,
    BitString,
    ExportFun,
    FrozenList,
    ImproperList,
    Pid,
    binary_to_term,
    decode_term,
    encode_term,
    inspect_atom,
    inspect_binary,
    inspect_term,
    module_display_name,
    proplist_get,
    term_to_binary,
    to_text,
)


class TestDecodeTags:

    def test_small_integer(self):
        assert decode_term(bytes([97, 42])) == 42

    def test_integer(self):
        assert decode_term(bytes([98]) + struct.pack(">i", -70000)) == -70000

    def test_new_float(self):
        assert decode_term(bytes([70]) + struct.pack(">d", 1.5)) == 1.5

    def test_old_float(self):
        text = b"2.50000000000000000000e+00".ljust(31, b"\x00")
        assert decode_term(bytes([99]) + text) == 2.5

    def test_latin1_atom(self):
        term = decode_term(bytes([100, 0, 2]) + b"ok")
        assert isinstance(term, Atom)
        assert term == "ok"

    def test_small_utf8_atom(self):
        raw = "héllo".encode("utf-8")
        assert decode_term(bytes([119, len(raw)]) + raw) == "héllo"

    def test_string_ext_is_charlist(self):
        assert decode_term(bytes([107, 0, 3]) + b"abc") == [97, 98, 99]

    def test_nil(self):
        assert decode_term(bytes([106])) == []

    def test_proper_list(self):
        data = bytes([108, 0, 0, 0, 2, 97, 1, 97, 2, 106])
        assert decode_term(data) == [1, 2]

    def test_improper_list(self):
        data = bytes([108, 0, 0, 0, 1, 97, 1, 97, 2])
        assert decode_term(data) == ImproperList((1,), 2)

    def test_binary(self):
        assert decode_term(bytes([109, 0, 0, 0, 2]) + b"hi") == b"hi"

    def test_bit_binary(self):
        term = decode_term(bytes([77, 0, 0, 0, 1, 3, 0xE0]))
        assert term == BitString(b"\xe0", 3)
        assert term.bit_size == 3

    def test_small_big(self):
        assert decode_term(bytes([110, 2, 1, 0x00, 0x01])) == -256

    def test_tuple(self):
        data = bytes([104, 2, 97, 1, 119, 2]) + b"ok"
        assert decode_term(data) == (1, "ok")

    def test_map_with_list_key(self):
        data = bytes([116, 0, 0, 0, 1]) + bytes([107, 0, 1, 65]) + bytes([97, 1])
        term = decode_term(data)
        assert term == {FrozenList([65]): 1}

    def test_export_fun(self):
        data = bytes([113]) + bytes([119, 6]) + b"erlang" + bytes([119, 1]) + b"+" + bytes([97, 2])
        assert decode_term(data) == ExportFun("erlang", "+", 2)

    def test_new_pid(self):
        data = bytes([88, 119, 1]) + b"n" + struct.pack(">III", 5, 0, 1)
        assert decode_term(data) == Pid("n", 5, 0, 1)

    def test_unknown_tag(self):
        with pytest.raises(EtfDecodeError, match="unsupported term tag"):
            decode_term(bytes([200]))

    def test_truncated(self):
        with pytest.raises(EtfDecodeError):
            decode_term(bytes([109, 0, 0, 0, 9]) + b"short")


class TestBinaryToTerm:

    def test_version_byte_required(self):
        with pytest.raises(EtfDecodeError, match="version"):
            binary_to_term(bytes([97, 1]))

    def test_compressed(self):
        body = encode_term([Atom("a")] * 50)
        data = bytes([131, 80]) + struct.pack(">I", len(body)) + zlib.compress(body)
        assert binary_to_term(data) == [Atom("a")] * 50

    def test_compressed_size_mismatch(self):
        body = encode_term(1)
        data = bytes([131, 80]) + struct.pack(">I", 99) + zlib.compress(body)
        with pytest.raises(EtfDecodeError):
            binary_to_term(data)

    @pytest.mark.parametrize("term", [
        0, 255, 256, -1, 1 << 70, -(1 << 70), 3.25,
        Atom("ok"), b"", b"bytes", [], [1, 2, 300], (Atom("a"), [Atom("b")]),
        {Atom("k"): (1, 2)}, ImproperList((1, 2), Atom("t")),
        ExportFun(Atom("lists"), Atom("map"), 2),
    ])
    def test_encoder_output_decodes(self, term):
        assert binary_to_term(term_to_binary(term)) == term
        assert binary_to_term(term_to_binary(term, compressed=True)) == term

    def test_encoder_maps_python_constants(self):
        assert binary_to_term(term_to_binary(None)) == Atom("nil")
        assert binary_to_term(term_to_binary(True)) == Atom("true")
        assert binary_to_term(term_to_binary("text")) == b"text"

    def test_encoder_rejects_objects(self):
        with pytest.raises(TypeError):
            encode_term(object())


class TestInspect:

    @pytest.mark.parametrize("name, expected", [
        ("ok", ":ok"),
        ("nil", "nil"),
        ("true", "true"),
        ("Elixir.Foo.Bar", "Foo.Bar"),
        ("Elixir", "Elixir"),
        ("with space", ':"with space"'),
        ("+", ":+"),
        ("valid?", ":valid?"),
    ])
    def test_atoms(self, name, expected):
        assert inspect_atom(name) == expected

    def test_module_display_name(self):
        assert module_display_name("Elixir.Enum") == "Enum"
        assert module_display_name("lists") == "lists"

    def test_binaries(self):
        assert inspect_binary(b"hello\n") == '"hello\\n"'
        assert inspect_binary(b"\xff\x00") == "<<255, 0>>"
        assert inspect_binary(bytes(range(200, 210)), limit=3) == "<<200, 201, 202, ...>>"

    def test_charlist(self):
        assert inspect_term([104, 105]) == '~c"hi"'

    def test_keyword_list(self):
        assert inspect_term([(Atom("a"), 1), (Atom("b"), 2)]) == "[a: 1, b: 2]"

    def test_tuple_and_list_limit(self):
        assert inspect_term((1, 2, 3), limit=2) == "{1, 2, ...}"
        assert inspect_term([1, 2, 300], limit=1) == "[1, ...]"

    def test_map_with_atom_keys(self):
        assert inspect_term({Atom("a"): 1}) == "%{a: 1}"

    def test_map_with_other_keys(self):
        assert inspect_term({1: b"x"}) == '%{1 => "x"}'

    def test_struct(self):
        term = {Atom("__struct__"): Atom("Elixir.URI"), Atom("host"): None}
        assert inspect_term(term) == "%URI{host: nil}"

    def test_improper_list(self):
        assert inspect_term(ImproperList((1,), 2)) == "[1 | 2]"

    def test_export_fun(self):
        assert inspect_term(ExportFun(Atom("Elixir.Enum"), Atom("map"), 2)) == "&Enum.map/2"

    def test_bitstring(self):
        assert inspect_term(BitString(b"\x01\xe0", 3)) == "<<1, 7::size(3)>>"


class TestProplists:

    def test_to_text(self):
        assert to_text([104, 105]) == "hi"
        assert to_text(b"hi") == "hi"
        assert to_text(Atom("hi")) == "hi"
        assert to_text(42) is None

    def test_proplist_get(self):
        proplist = [(Atom("version"), [55]), (Atom("source"), [47])]
        assert proplist_get(proplist, "source") == [47]
        assert proplist_get(proplist, "missing", 0) == 0
        assert proplist_get("not a list", "source") is None
