import json

import pytest

import main as cli
from field_plot import plot_network_field, save_field_plot
from vector_utils import export_field_to_svg, unit_rows, unit_vector

TOPOLOGY = {
    "nodes": [
        {"id": "A", "coordinate": [0, 0, 0]},
        {"id": "B", "coordinate": [10, 0, 0]},
        {"id": "C", "coordinate": [10, 10, 0]},
    ],
    "edges": [
        {"id": "AB", "from": "A", "to": "B"},
        {"id": "BC", "from": "B", "to": "C"},
    ],
}

REGISTRY = """sensorID,x,y,z,roadwayID,ratio
sA,0,0,0,A,
sC,10,10,0,C,
sM,5,0,0,AB,
"""

READINGS = """sensorID,time,value
sA,2024-01-01T00:00:00Z,10
sC,2024-01-01T00:00:00Z,30
sM,2024-01-01T00:01:00Z,25
"""


@pytest.fixture
def inputs(tmp_path):
    topology = tmp_path / "network.json"
    registry = tmp_path / "registry.csv"
    readings = tmp_path / "readings.csv"
    topology.write_text(json.dumps(TOPOLOGY))
    registry.write_text(REGISTRY)
    readings.write_text(READINGS)
    return topology, registry, readings


def test_unit_helpers():
    assert list(unit_vector([3.0, 4.0, 0.0])) == pytest.approx([0.6, 0.8, 0.0])
    assert list(unit_vector([0.0, 0.0, 0.0])) == [0.0, 0.0, 0.0]
    units, norms = unit_rows([[0.0, 2.0, 0.0], [0.0, 0.0, 0.0]])
    assert list(norms) == [2.0, 0.0]
    assert list(units[0]) == [0.0, 1.0, 0.0]
    assert list(units[1]) == [0.0, 0.0, 0.0]


def test_svg_export(tmp_path, path_topology):
    out = export_field_to_svg(
        path_topology,
        {"AB": (1.0, 0.0, 0.0)},
        tmp_path / "field.svg",
        junction_colors={"A": (0.0, 0.0, 1.0)},
    )
    text = out.read_text()
    assert text.count("<polyline") == 2
    assert text.count("<circle") == 3
    assert "rgb(255,0,0)" in text
    assert "rgb(0,0,255)" in text


def test_plot_is_saved(tmp_path, path_topology):
    fig = plot_network_field(
        path_topology,
        {"AB": 12.0, "BC": 30.0},
        10.0,
        40.0,
        map_name="viridis",
        junction_values={"A": 10.0, "B": 20.0, "C": 40.0},
        title="field",
    )
    out = save_field_plot(fig, tmp_path / "field.png")
    assert out.is_file()
    assert out.stat().st_size > 0


def test_cli_writes_json_and_exports(tmp_path, inputs):
    topology, registry, readings = inputs
    output = tmp_path / "result.json"
    svg = tmp_path / "result.svg"

    code = cli.main([
        str(topology),
        "--registry", str(registry),
        "--readings", str(readings),
        "--min", "10", "--max", "30",
        "--output", str(output),
        "--svg", str(svg),
        "--log-level", "WARNING",
    ])

    assert code == 0
    payload = json.loads(output.read_text())
    assert payload["mode"] == "field"
    assert payload["time"] == 1704067260.0
    assert payload["junction_values"] == {"A": 10.0, "B": 25.0, "C": 30.0}
    assert payload["control_points"]["AB"] == [[0.0, 10.0], [0.5, 25.0], [1.0, 25.0]]
    assert set(payload["segment_colors"]) == {"AB", "BC"}
    assert svg.is_file()


def test_cli_shortest_path_with_custom_stops(tmp_path, inputs):
    topology, registry, readings = inputs
    output = tmp_path / "result.json"
    plot = tmp_path / "result.png"

    code = cli.main([
        str(topology),
        "--registry", str(registry),
        "--readings", str(readings),
        "--time", "2024-01-01T00:00:00Z",
        "--mode", "shortest_path",
        "--custom-stops", "#000000,#ffffff",
        "--output", str(output),
        "--plot", str(plot),
        "--log-level", "WARNING",
    ])

    assert code == 0
    payload = json.loads(output.read_text())
    assert payload["mode"] == "shortest_path"
    assert payload["control_points"] == {}
    assert payload["junction_values"]["B"] == pytest.approx(20.0)
    assert plot.is_file()


def test_cli_missing_input_fails(tmp_path, inputs):
    _, registry, readings = inputs
    code = cli.main([
        str(tmp_path / "missing.json"),
        "--registry", str(registry),
        "--readings", str(readings),
        "--log-level", "ERROR",
    ])
    assert code == 1


def test_cli_bad_time_fails(inputs):
    topology, registry, readings = inputs
    code = cli.main([
        str(topology),
        "--registry", str(registry),
        "--readings", str(readings),
        "--time", "someday",
        "--log-level", "ERROR",
    ])
    assert code == 1
