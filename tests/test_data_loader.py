from __future__ import annotations

import json

import pytest

from perturb_discovery.data_loader import (
    load_annotations,
    load_config,
    load_counts,
    load_gene_selection,
    load_primary_lfsr,
    load_reference_results,
)
from perturb_discovery.exceptions import DataContractError, MissingColumnError
from perturb_discovery.models import ReferenceMethodSpec


def test_load_counts_shape(input_files):
    df = load_counts(input_files["counts"])
    assert df.index.name == "gene"
    assert df.shape == (40, 120)
    assert (df >= 0).all().all()
    assert str(df.dtypes.iloc[0]) == "int64"


def test_load_annotations_indexed_by_barcode(input_files):
    df = load_annotations(input_files["annotations"], "cell_barcode")
    assert df.index.name == "cell_barcode"
    assert df.columns[:4].tolist() == ["orig.ident", "T1", "T2", "NonTarget"]


def test_duplicate_barcodes_rejected(tmp_path):
    path = tmp_path / "annotations.csv"
    path.write_text("cell_barcode,orig.ident\nAAA,stim\nAAA,rest\n")
    with pytest.raises(DataContractError, match="AAA"):
        load_annotations(path)


def test_missing_barcode_column_raises(tmp_path):
    path = tmp_path / "annotations.csv"
    path.write_text("barcode,orig.ident\nAAA,stim\n")
    with pytest.raises(MissingColumnError):
        load_annotations(path, "cell_barcode")


def test_tab_separated_counts(tmp_path):
    path = tmp_path / "counts.tsv"
    path.write_text("gene\tc1\tc2\nG1\t1\t0\n")
    assert load_counts(path).loc["G1"].tolist() == [1, 0]


def test_missing_gene_column_raises(tmp_path):
    bad_counts = tmp_path / "bad.csv"
    bad_counts.write_text("feature,c1\nG1,100\n")
    with pytest.raises(DataContractError):
        load_counts(bad_counts)


def test_non_numeric_counts_error_includes_context(tmp_path):
    bad_counts = tmp_path / "bad_counts.csv"
    bad_counts.write_text("gene,cell_1\nG1,10\nG2,abc\n")
    with pytest.raises(DataContractError) as excinfo:
        load_counts(bad_counts)
    message = str(excinfo.value)
    assert "cell_1" in message
    assert "G2" in message


def test_non_integer_counts_error(tmp_path):
    bad_counts = tmp_path / "bad_counts_float.csv"
    bad_counts.write_text("gene,cell_1\nG1,5.5\n")
    with pytest.raises(DataContractError) as excinfo:
        load_counts(bad_counts)
    assert "non-integer" in str(excinfo.value)


def test_negative_counts_rejected(tmp_path):
    path = tmp_path / "negative.csv"
    path.write_text("gene,cell_1\nG1,-3\n")
    with pytest.raises(DataContractError, match="negative"):
        load_counts(path)


def test_malformed_csv_reports_line(tmp_path):
    malformed = tmp_path / "malformed.csv"
    malformed.write_text("gene,cell_1\nG1,10\nG2,3,4\n")
    with pytest.raises(DataContractError) as excinfo:
        load_counts(malformed)
    assert "malformed" in str(excinfo.value)


def test_gene_selection_keeps_order_and_drops_repeats(tmp_path):
    path = tmp_path / "genes.txt"
    path.write_text("gene\nG3\nG1\n\nG3\n# comment\nG2\n")
    assert load_gene_selection(path) == ["G3", "G1", "G2"]


def test_empty_gene_selection_rejected(tmp_path):
    path = tmp_path / "genes.txt"
    path.write_text("\n")
    with pytest.raises(DataContractError):
        load_gene_selection(path)


def test_reference_results_require_mapped_columns(tmp_path):
    path = tmp_path / "ref.csv"
    path.write_text("perturbation,gene,log2FoldChange,padj\nT1,G0,-2.0,0.001\n")
    with pytest.raises(MissingColumnError) as excinfo:
        load_reference_results(path, ReferenceMethodSpec(name="deseq"))
    assert excinfo.value.columns == ["target"]

    table = load_reference_results(path, ReferenceMethodSpec(name="deseq", target_column="perturbation"))
    assert table.loc[0, "padj"] == pytest.approx(0.001)


def test_primary_lfsr_range_checked(tmp_path):
    path = tmp_path / "lfsr.csv"
    path.write_text("gene,T1,T2\nG0,0.01,0.5\nG1,0.2,1.2\n")
    with pytest.raises(DataContractError, match=r"\[0, 1\]"):
        load_primary_lfsr(path)

    path.write_text("gene,T1,T2\nG0,0.01,0.5\nG1,0.2,0.9\n")
    matrix = load_primary_lfsr(path)
    assert matrix.columns.tolist() == ["T1", "T2"]


def test_load_config_promotes_top_level_fdr(tmp_path):
    path = tmp_path / "config.json"
    payload = {
        "conditions": ["stim"],
        "fdr_threshold": 0.2,
        "layout": {"indicator_start": "T1", "indicator_end": "NonTarget"},
    }
    path.write_text(json.dumps(payload))
    config = load_config(path)
    assert config.discovery.fdr_threshold == 0.2
    assert config.layout.control_label == "NonTarget"


def test_invalid_config_raises_data_contract_error(tmp_path):
    path = tmp_path / "config.json"
    payload = {"conditions": ["stim", "stim"], "layout": {"indicator_start": "A", "indicator_end": "B"}}
    path.write_text(json.dumps(payload))
    with pytest.raises(DataContractError, match="unique"):
        load_config(path)
