import pytest

from metricgateway.deconstructors import DeconstructorError, NilDeconstructor
from metricgateway.protocol import MetricType
from metricgateway.regex_deconstructor import RegexDeconstructor, RegexRule, regex_json_loader

VALID_CONFIG = {
    "MetricRules": [
        {
            "Regex": r"(?P<sf_metric_0>foo.*)\.(?P<middle>.*)(?P<sf_metric_1>\.baz)",
            "AdditionalDimensions": {"key1": "value1"},
        },
        {"Regex": r"(?P<sf_metric>umbop.*)", "MetricType": "cumulative_counter"},
        {"Regex": "blarg.*"},
        {"Regex": "madeup.*", "MetricName": "madeup.blarg"},
    ]
}


@pytest.fixture
def decon():
    return regex_json_loader(VALID_CONFIG)


def test_three_terms(decon):
    metric, mtype, dims = decon.parse("foo.bar.baz")
    assert metric == "foo.baz"
    assert mtype == MetricType.GAUGE
    assert dims == {"key1": "value1", "middle": "bar"}


def test_no_match_falls_back(decon):
    metric, mtype, dims = decon.parse("baz.bar.foo")
    assert metric == "baz.bar.foo"
    assert mtype == MetricType.GAUGE
    assert dims == {}


def test_four_terms(decon):
    metric, mtype, dims = decon.parse("foo.dippity.bar.baz")
    assert metric == "foo.dippity.baz"
    assert mtype == MetricType.GAUGE
    assert dims == {"key1": "value1", "middle": "bar"}


def test_umbop_counter(decon):
    metric, mtype, dims = decon.parse("umbop.hansen.blarg")
    assert metric == "umbop.hansen.blarg"
    assert mtype == MetricType.COUNTER
    assert dims == {}


def test_blarg_whole_name(decon):
    metric, mtype, dims = decon.parse("blarg.i.am.not.going.to.school")
    assert metric == "blarg.i.am.not.going.to.school"
    assert mtype == MetricType.GAUGE
    assert dims == {}


def test_madeup_metric_name(decon):
    metric, mtype, dims = decon.parse("madeup.i.am.not.going.to.school")
    assert metric == "madeup.blarg"
    assert mtype == MetricType.GAUGE
    assert dims == {}


def test_fallback_nil():
    decon = regex_json_loader({"FallbackDeconstructor": "nil", "MetricRules": []})
    assert isinstance(decon.fallback, NilDeconstructor)
    with pytest.raises(DeconstructorError, match="nilDeconstructor always returns an error"):
        decon.parse("one.two.three.four.five.six.seven")


def test_bad_fallback():
    with pytest.raises(DeconstructorError,
                       match="unable to load metric deconstructor by the name of blarg"):
        regex_json_loader({"FallbackDeconstructor": "blarg", "MetricRules": []})


def test_bad_fallback_config():
    config = {
        "FallbackDeconstructor": "commakeys",
        "FallbackDeconstructorConfig": "blarg",
        "MetricRules": [],
    }
    with pytest.raises(DeconstructorError, match="parameter blarg"):
        regex_json_loader(config)


def test_bad_metric_type():
    config = {"MetricRules": [{"Regex": ".*", "MetricType": "blarg"}]}
    with pytest.raises(DeconstructorError, match="cannot parse configured MetricType of blarg"):
        regex_json_loader(config)


def test_additional_dimensions_wrong_type():
    config = {"MetricRules": [{"Regex": ".*", "AdditionalDimensions": "blarg"}]}
    with pytest.raises(DeconstructorError, match="cannot unmarshal string"):
        regex_json_loader(config)


def test_unencodable_config():
    with pytest.raises(DeconstructorError, match="cannot encode configuration"):
        regex_json_loader({"noparse": lambda: None})


def test_invalid_regex():
    with pytest.raises(DeconstructorError, match="error parsing regexp"):
        regex_json_loader({"MetricRules": [{"Regex": "[abc"}]})


def test_rule_built_directly():
    rule = RegexRule(r"(?P<host>[a-z]+)\.(?P<sf_metric>cpu)", metric_name="sys.")
    decon = RegexDeconstructor([rule], NilDeconstructor())
    metric, mtype, dims = decon.parse("web.cpu")
    assert metric == "sys.cpu"
    assert mtype == MetricType.GAUGE
    assert dims == {"host": "web"}