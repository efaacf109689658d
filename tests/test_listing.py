# tests/test_listing.py
"""
Tests for the listing parser (parsimonious grammar + NodeVisitor).
"""

import pytest

from svctaint.errors import ListingSyntaxError, MalformedProgramError
from svctaint.listing import load_listing, parse_listing
from svctaint.program import (
    Assign,
    BinOp,
    Call,
    Cast,
    Evaluate,
    FieldRead,
    IntLit,
    Return,
    SourceLocation,
    StrLit,
    This,
    Var,
    Visibility,
)

SAMPLE = '''
    // a service with a branching endpoint
    constant TOP = 7;

    interface facebook::fb303::cpp2::FacebookServiceSvIf;

    struct ns::request {
        s: string;
        i: int;
    }

    class ns::Service : facebook::fb303::cpp2::FacebookServiceSvIf tagged ns::Extra {
        const URL_OPTION = 10002;
        field name: string;

        public method run(cmd: string, &_return: string) -> void {
            local tmp: string;
            b0: tmp = cmd + "x";
                goto b1, b2;
            b1: system(tmp);
            b2: return;
        }

        private method hidden(x: string) -> void;

        protected virtual method v(x: const char*) -> int { return 0; }
    }

    extern function system(cmd: char*) -> int;
'''


@pytest.fixture
def program():
    return parse_listing(SAMPLE, "sample.listing")


def _body(text):
    program = parse_listing("function f(p: ns::request*, x: string) -> void {\n"
                            + text + "\n}\n")
    return program.procedures["f"]


class TestDeclarations:

    def test_constants(self, program):
        assert program.constants["TOP"] == 7
        assert program.constants["ns::Service::URL_OPTION"] == 10002

    def test_interface_is_a_marker_class(self, program):
        marker = program.classes["facebook::fb303::cpp2::FacebookServiceSvIf"]
        assert marker.is_marker

    def test_class_bases_and_tags(self, program):
        cls = program.classes["ns::Service"]
        assert cls.bases == ("facebook::fb303::cpp2::FacebookServiceSvIf",)
        assert cls.capabilities == frozenset({"ns::Extra"})
        assert cls.fields == {"name": "string"}
        assert set(cls.methods) == {"run", "hidden", "v"}

    def test_struct(self, program):
        assert program.structs["ns::request"].fields == \
            {"s": "string", "i": "int"}

    def test_method_signature(self, program):
        run = program.procedures["ns::Service::run"]
        assert run.declaring_class == "ns::Service"
        assert run.visibility is Visibility.PUBLIC
        assert [(p.name, p.type_name, p.by_ref) for p in run.params] == [
            ("cmd", "string", False), ("_return", "string", True)]
        assert run.locals == {"tmp": "string"}

    def test_declaration_without_body(self, program):
        hidden = program.procedures["ns::Service::hidden"]
        assert hidden.is_private
        assert not hidden.has_body
        assert not program.procedures["system"].has_body

    def test_virtual_method(self, program):
        v = program.procedures["ns::Service::v"]
        assert v.is_virtual
        assert v.visibility is Visibility.PROTECTED
        assert v.return_type == "int"
        assert v.params[0].type_name == "const char*"


class TestBlocks:

    def test_labelled_blocks(self, program):
        run = program.procedures["ns::Service::run"]
        assert run.entry == "b0"
        assert [(b.id, b.successors) for b in run.blocks] == [
            ("b0", ("b1", "b2")),
            ("b1", ("b2",)),
            ("b2", ()),
        ]

    def test_straight_line_body(self):
        proc = _body("    system(x);\n    return;")
        (block,) = proc.blocks
        assert block.id == "b0"
        assert isinstance(block.statements[0], Evaluate)
        assert isinstance(block.statements[1], Return)

    def test_empty_body(self):
        proc = _body("")
        assert proc.has_body
        assert proc.blocks[0].statements == ()

    def test_return_ends_block(self):
        proc = _body("b0: return x;\nb1: system(x);")
        (ret,) = proc.block("b0").statements
        assert isinstance(ret, Return)
        assert ret.value == Var("x")
        assert proc.block("b0").successors == ()
        assert proc.block("b1").successors == ()


class TestExpressions:

    def _value(self, text):
        (stmt,) = _body(f"    y = {text};").blocks[0].statements
        assert isinstance(stmt, Assign)
        return stmt.value

    def test_cast_and_addition(self):
        assert self._value("(int) TOP + 2") == \
            BinOp("+", Cast("int", Var("TOP")), IntLit(2))

    def test_field_and_method_call(self):
        value = self._value("p->s.c_str()")
        assert isinstance(value, Call)
        assert value.callee == "c_str"
        assert value.receiver == FieldRead(Var("p"), "s")
        assert value.args == ()

    def test_constructor(self):
        value = self._value("new std::ofstream(x)")
        assert value.constructor
        assert value.callee == "std::ofstream::ofstream"
        assert value.args == (Var("x"),)

    def test_qualified_call(self):
        value = self._value('ns::f(x, "a\\"b", -3)')
        assert value.callee == "ns::f"
        assert value.receiver is None
        assert value.args == (Var("x"), StrLit('a"b'), IntLit(-3))

    def test_this(self):
        assert self._value("this") == This()
        assert self._value("this.name") == FieldRead(This(), "name")

    def test_parenthesized(self):
        assert self._value("(x)") == Var("x")

    def test_call_locations(self):
        proc = _body("    system(x);")
        (stmt,) = proc.blocks[0].statements
        assert stmt.expr.location == SourceLocation("<listing>", 2, 5)


class TestErrors:

    def test_syntax_error_has_position(self):
        with pytest.raises(ListingSyntaxError) as excinfo:
            parse_listing("function f() -> void {\n    system(;\n}\n", "bad.listing")
        assert excinfo.value.line is not None
        assert excinfo.value.filename == "bad.listing"
        assert str(excinfo.value).startswith("bad.listing:")

    def test_duplicate_block_label(self):
        with pytest.raises(ListingSyntaxError, match="duplicate block label"):
            _body("b0: return;\nb0: return;")

    def test_duplicate_method(self):
        with pytest.raises(ListingSyntaxError, match="duplicate method"):
            parse_listing('''
                class ns::C {
                    public method m() -> void;
                    public method m() -> void;
                }
            ''')

    def test_duplicate_parameter(self):
        with pytest.raises(ListingSyntaxError, match="duplicate parameter"):
            parse_listing("function f(a: int, a: int) -> void;")

    def test_assignment_to_call(self):
        with pytest.raises(ListingSyntaxError, match="assignment target"):
            _body("f(x) = x;")

    def test_unknown_successor(self):
        with pytest.raises(MalformedProgramError) as excinfo:
            _body("b0: goto nowhere;")
        assert excinfo.value.procedure == "f"
        assert "nowhere" in str(excinfo.value)


class TestFiles:

    def test_load_listing(self, tmp_path):
        path = tmp_path / "svc.listing"
        path.write_text(SAMPLE, encoding="utf-8")
        program = load_listing(path)
        assert program.name == str(path)
        assert "ns::Service::run" in program.procedures
        run = program.procedures["ns::Service::run"]
        (call,) = list(run.calls())
        assert call.location.file == str(path)

    def test_endpoints_listing(self, endpoints_program):
        service1 = endpoints_program.classes["endpoints::Service1"]
        assert len(service1.methods) == 21
        assert endpoints_program.resolve_constant(
            "CURLOPT_URL", "endpoints::Service1") == 10002
        assert endpoints_program.classes["endpoints::Service3"].bases == \
            ("endpoints::Service1",)
