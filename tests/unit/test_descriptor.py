"""Unit tests for descriptor parsing."""
import os

import pytest

from l10n.descriptor import (
    FRONTMATTER_PRESERVE,
    Directive,
    parse_descriptor,
    parse_descriptor_text,
    split_descriptor,
    validate_directive,
)
from l10n.errors import ConfigurationError

FULL_DESCRIPTOR = """+++
[[translate]]
source = "docs/*.md"
targets = ["es", "fr"]
output = "out/{lang}/{relpath}"
exclude = ["docs/drafts/*.md"]
preserve = ["urls"]
check_cmd = "true {path}"
check_cmds = { json = "jq . {path}" }
retries = 4

[llm]
provider = "openai"
coordinator_model = "gpt-4o"
translator_model = "gpt-4o-mini"
temperature = 0.2
headers = { "X-Team" = "docs" }

[[llm.agent]]
role = "translator"
model = "gpt-4.1"
max_tokens = 2048
+++
Use a friendly tone.
"""


class TestSplitDescriptor:

    def test_header_and_body(self):
        header, body = split_descriptor("+++\na = 1\n+++\nBody text\n")
        assert header == "a = 1"
        assert body == "Body text\n"

    def test_no_header(self):
        header, body = split_descriptor("Just context.\n")
        assert header is None
        assert body == "Just context.\n"

    def test_fence_with_surrounding_whitespace(self):
        header, body = split_descriptor("  +++  \na = 1\n +++\nBody")
        assert header == "a = 1"
        assert body == "Body"

    def test_unclosed_fence(self):
        with pytest.raises(ConfigurationError, match=r"no closing \+\+\+"):
            split_descriptor("+++\na = 1\nBody\n")


class TestParseDescriptor:

    def test_full_descriptor(self):
        parsed = parse_descriptor_text(FULL_DESCRIPTOR, "/proj/L10N.md", depth=0)

        assert parsed.path == os.path.abspath("/proj/L10N.md")
        assert parsed.dir == os.path.dirname(os.path.abspath("/proj/L10N.md"))
        assert parsed.body.strip() == "Use a friendly tone."

        assert len(parsed.directives) == 1
        directive = parsed.directives[0]
        assert directive.source == "docs/*.md"
        assert directive.targets == ("es", "fr")
        assert directive.output == "out/{lang}/{relpath}"
        assert directive.exclude == ("docs/drafts/*.md",)
        assert directive.preserve == ("urls",)
        assert directive.check_cmd == "true {path}"
        assert directive.check_cmds == {"json": "jq . {path}"}
        assert directive.retries == 4
        assert directive.frontmatter == FRONTMATTER_PRESERVE
        assert directive.index == 0
        assert directive.origin_depth == 0

        llm = parsed.llm
        assert llm.provider == "openai"
        assert llm.coordinator_model == "gpt-4o"
        assert llm.translator_model == "gpt-4o-mini"
        assert llm.temperature == 0.2
        assert llm.headers == {"X-Team": "docs"}
        assert len(llm.agents) == 1
        assert llm.agents[0].role == "translator"
        assert llm.agents[0].model == "gpt-4.1"
        assert llm.agents[0].max_tokens == 2048

    def test_legacy_path_field_becomes_source(self):
        contents = '+++\n[[translate]]\npath = "README.md"\ntargets = ["de"]\noutput = "{lang}/README.md"\n+++\n'
        parsed = parse_descriptor_text(contents, "/proj/L10N.md")
        assert parsed.directives[0].source == "README.md"

    def test_declaration_index_and_depth(self):
        contents = (
            "+++\n"
            '[[translate]]\nsource = "a.md"\ntargets = ["es"]\noutput = "x/{lang}/a.md"\n'
            '[[translate]]\nsource = "b.md"\ntargets = ["es"]\noutput = "x/{lang}/b.md"\n'
            "+++\n"
        )
        parsed = parse_descriptor_text(contents, "/proj/docs/L10N.md", depth=1)
        assert [d.index for d in parsed.directives] == [0, 1]
        assert all(d.origin_depth == 1 for d in parsed.directives)
        assert parsed.directives[1].precedence == (1, 1)

    def test_body_only_descriptor(self):
        parsed = parse_descriptor_text("Glossary: keep product names in English.\n", "/proj/L10N.md")
        assert parsed.directives == ()
        assert parsed.body.startswith("Glossary")

    def test_invalid_toml(self):
        with pytest.raises(ConfigurationError, match="parse frontmatter"):
            parse_descriptor_text("+++\n[[translate]\n+++\n", "/proj/L10N.md")

    def test_wrong_value_type(self):
        contents = '+++\n[[translate]]\nsource = "a.md"\ntargets = "es"\noutput = "{lang}/a.md"\n+++\n'
        with pytest.raises(ConfigurationError, match="translate.0.targets"):
            parse_descriptor_text(contents, "/proj/L10N.md")

    def test_missing_targets(self):
        contents = '+++\n[[translate]]\nsource = "a.md"\noutput = "{lang}/a.md"\n+++\n'
        with pytest.raises(ConfigurationError, match="has no targets"):
            parse_descriptor_text(contents, "/proj/L10N.md")

    def test_missing_output(self):
        contents = '+++\n[[translate]]\nsource = "a.md"\ntargets = ["es"]\n+++\n'
        with pytest.raises(ConfigurationError, match="has no output"):
            parse_descriptor_text(contents, "/proj/L10N.md")

    def test_invalid_frontmatter_mode(self):
        contents = (
            '+++\n[[translate]]\nsource = "a.md"\ntargets = ["es"]\noutput = "{lang}/a.md"\n'
            'frontmatter = "drop"\n+++\n'
        )
        with pytest.raises(ConfigurationError, match="invalid frontmatter mode"):
            parse_descriptor_text(contents, "/proj/L10N.md")

    def test_error_names_descriptor_path(self):
        contents = '+++\n[[translate]]\ntargets = ["es"]\noutput = "{lang}/a.md"\n+++\n'
        with pytest.raises(ConfigurationError) as exc_info:
            parse_descriptor_text(contents, "/proj/sub/L10N.md")
        assert os.path.abspath("/proj/sub/L10N.md") in str(exc_info.value)
        assert "requires source/path" in str(exc_info.value)

    def test_parse_descriptor_reads_file(self, project):
        path = project.write("L10N.md", FULL_DESCRIPTOR)
        parsed = parse_descriptor(path)
        assert parsed.directives[0].source == "docs/*.md"


class TestValidateDirective:

    def test_valid_directive(self):
        validate_directive(Directive(source="a.md", targets=("es",), output="{lang}/a.md"))

    def test_blank_source(self):
        with pytest.raises(ConfigurationError):
            validate_directive(Directive(source="  ", targets=("es",), output="{lang}/a.md"))
