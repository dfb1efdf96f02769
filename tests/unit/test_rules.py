"""Tests for audit rules and the rule engine."""

import pytest

from personaguard.audit.rules import (
    CODE,
    CODE_RULES,
    CONFIG_RULES,
    CONFIGURATION,
    PatternRule,
    RuleEngine,
    SemanticRule,
    default_rule_engine,
)
from personaguard.security.severity import Severity
from personaguard.util.errors import PatternRejected

CLASSIC_TOKEN = "ghp_" + "A1b2C3d4E5" * 3 + "F6g7H8"


@pytest.fixture(scope="module")
def engine():
    return default_rule_engine()


def rule_ids(engine, content, path="app.py", scanner=CODE):
    return {f.rule_id for f in engine.evaluate(scanner, path, content)}


class TestRuleAdmission:
    """Registration goes through the complexity analyzer."""

    def test_default_rules_admitted(self, engine):
        """Every built-in rule registers."""
        assert len(engine.rules()) == len(CODE_RULES) + len(CONFIG_RULES) + 3
        assert {r.scanner for r in engine.rules()} == {"code", "dependency", "configuration"}

    def test_every_owasp_category_covered(self, engine):
        """Each OWASP Top 10 category has at least one rule."""
        categories = {r.owasp.split(":")[0] for r in engine.rules() if r.owasp}
        assert categories >= {f"A{n:02d}" for n in range(1, 11)}

    def test_high_risk_pattern_rejected(self):
        """Catastrophic patterns are refused at registration."""
        rule = PatternRule(id="BAD-1", name="bad", severity=Severity.LOW, scanner=CODE, pattern=r"(a+)+$")
        with pytest.raises(PatternRejected):
            RuleEngine([rule])

    def test_duplicate_id_rejected(self):
        """Rule ids are unique."""
        rule = PatternRule(id="DUP-1", name="dup", severity=Severity.LOW, scanner=CODE, pattern=r"\bfoo\b")
        engine = RuleEngine([rule])
        with pytest.raises(PatternRejected):
            engine.add_rule(rule)

    def test_lookup(self, engine):
        """Rules are retrievable by id and scanner."""
        assert engine.get("CWE-78-001").severity is Severity.CRITICAL
        assert all(r.scanner == CONFIGURATION for r in engine.rules_for(CONFIGURATION))


class TestCodeRules:
    """Positive and negative samples for the code rules."""

    @pytest.mark.parametrize(
        "rule_id,line",
        [
            ("OWASP-A01-001", "os.chmod(path, 0o777)"),
            ("OWASP-A02-001", "token = random.choice(alphabet)"),
            ("OWASP-A03-001", "result = eval(user_input)"),
            ("OWASP-A04-001", "    assert user.is_admin"),
            ("OWASP-A05-001", "app.run(host='0.0.0.0', debug=True)"),
            ("OWASP-A06-001", "import telnetlib"),
            ("OWASP-A07-001", "jwt.decode(token, key, algorithms=['none'])"),
            ("OWASP-A08-001", "os.system('curl -sSL https://get.example.sh | bash')"),
            ("OWASP-A09-001", "    return str(e), 500"),
            ("OWASP-A10-001", "requests.get(request.args['url'])"),
            ("CWE-22-001", "open(request.args['name'])"),
            ("CWE-78-001", "subprocess.run(cmd, shell=True)"),
            ("CWE-89-001", "cursor.execute(\"SELECT * FROM users WHERE id = \" + user_id)"),
            ("CWE-89-001", "cursor.execute(f\"SELECT * FROM users WHERE id = {user_id}\")"),
            ("CWE-798-001", "password = 'hunter2hunter2'"),
            ("CWE-798-002", f"TOKEN = '{CLASSIC_TOKEN}'"),
            ("CWE-502-001", "obj = pickle.loads(blob)"),
            ("CWE-327-001", "digest = hashlib.md5(data).hexdigest()"),
            ("CWE-295-001", "httpx.get(url, verify=False)"),
            ("PG-SEC-004", "logger.info('using token %s', token)"),
            ("PG-SEC-005", "data = yaml.load(text)"),
        ],
    )
    def test_positive(self, engine, rule_id, line):
        """Vulnerable lines are reported."""
        assert rule_id in rule_ids(engine, line + "\n")

    @pytest.mark.parametrize(
        "rule_id,line",
        [
            ("OWASP-A03-001", "tree = ast.literal_eval(text)"),
            ("OWASP-A03-001", "model.eval()"),
            ("CWE-89-001", "cursor.execute(\"SELECT * FROM users WHERE id = %s\", (user_id,))"),
            ("CWE-798-001", "password = 'changeme-please'"),
            ("CWE-798-001", "password = os.environ['DB_PASSWORD']"),
            ("CWE-327-001", "hashlib.md5(data, usedforsecurity=False)"),
            ("PG-SEC-004", "logger.info('using token %s', redact(token))"),
            ("PG-SEC-005", "data = yaml.load(text, Loader=yaml.SafeLoader)"),
            ("PG-SEC-005", "data = yaml.safe_load(text)"),
        ],
    )
    def test_negative(self, engine, rule_id, line):
        """Safe variants are not reported."""
        assert rule_id not in rule_ids(engine, line + "\n")

    def test_extension_filter(self, engine):
        """Python-only rules ignore other languages."""
        assert "OWASP-A04-001" not in rule_ids(engine, "assert user.is_admin\n", path="app.js")

    def test_line_numbers(self, engine):
        """Findings carry one-based line numbers."""
        findings = engine.evaluate(CODE, "app.py", "x = 1\n\nos.system(cmd)\n")
        assert [(f.rule_id, f.line) for f in findings] == [("CWE-78-001", 3)]

    def test_snippet_is_redacted(self, engine):
        """Credential literals never appear whole in a finding."""
        findings = engine.evaluate(CODE, "app.py", f"TOKEN = '{CLASSIC_TOKEN}'\n")

        assert findings
        for finding in findings:
            assert CLASSIC_TOKEN not in finding.snippet

    def test_finding_metadata(self, engine):
        """Findings inherit classification from their rule."""
        finding = engine.evaluate(CODE, "app.py", "pickle.load(f)\n")[0]
        assert finding.cwe == "CWE-502"
        assert finding.owasp == "A08:2021"
        assert finding.scanner == CODE
        assert finding.remediation


class TestSemanticRules:
    """Whole-file heuristics."""

    def test_missing_normalization(self, engine):
        """Persona content stored without validation is flagged."""
        source = "def save(request):\n    persona_body = request.json['body']\n    db.put(persona_body)\n"
        assert "PG-SEC-001" in rule_ids(engine, source)

        guarded = "validator = ContentValidator(log)\n" + source
        assert "PG-SEC-001" not in rule_ids(engine, guarded)

    def test_missing_audit_logging(self, engine):
        """Security rejections without logging are flagged."""
        source = "def check(x):\n    if x:\n        raise SecurityError('blocked')\n"
        assert "PG-SEC-002" in rule_ids(engine, source)

        logged = "def check(x):\n    security_log.record(evt)\n    raise SecurityError('blocked')\n"
        assert "PG-SEC-002" not in rule_ids(engine, logged)

    def test_unvalidated_persona_front_matter(self, engine):
        """Persona front-matter parsed directly with yaml is flagged."""
        source = "import yaml\n\ndef load_persona(text):\n    return yaml.safe_load(text)\n"
        findings = [f for f in engine.evaluate(CODE, "loader.py", source) if f.rule_id == "PG-SEC-003"]
        assert [f.line for f in findings] == [4]

        guarded = source + "parser = SecureStructuredParser(validator)\n"
        assert "PG-SEC-003" not in rule_ids(engine, guarded)

    def test_missing_rate_limiting(self, engine):
        """Remote API calls without a limiter are flagged."""
        source = "BASE = 'https://api.github.com/repos'\n"
        assert "PG-SEC-006" in rule_ids(engine, source)
        assert "PG-SEC-006" not in rule_ids(engine, source + "limiter = RateLimiter.for_preset('github_api')\n")

    def test_semantic_rules_skip_non_code(self, engine):
        """Semantic rules only run on code files."""
        rule = engine.get("PG-SEC-006")
        assert isinstance(rule, SemanticRule)
        assert not rule.applies_to("README.md")


class TestConfigRules:
    """Configuration file rules."""

    @pytest.mark.parametrize(
        "rule_id,path,line",
        [
            ("CFG-001", "settings.yaml", "debug: true"),
            ("CFG-002", "client.json", '  "verify_ssl": false,'),
            ("CFG-003", "server.toml", 'cors_origins = "*"'),
            ("CFG-004", ".env.production", "API_KEY=sk9f8a7d6s5a4f3d2s1"),
        ],
    )
    def test_positive(self, engine, rule_id, path, line):
        """Risky configuration values are reported."""
        assert rule_id in rule_ids(engine, line + "\n", path=path, scanner=CONFIGURATION)

    def test_secret_reference_not_reported(self, engine):
        """Environment references are not treated as secrets."""
        assert "CFG-004" not in rule_ids(engine, "password: ${DB_PASSWORD_VALUE}\n", "app.yaml", CONFIGURATION)
