from datetime import date
from decimal import Decimal

from icmstaxcalc.csv_normalizer import parse_date_any, parse_decimal_ptbr, parse_rules_csv
from icmstaxcalc.schemas import RuleKind

SHEET_PT = (
    "id;UF;Tipo;NCM;CFOP;CST;Redução;Crédito Outorgado;Protege;Prazo Meses;Vigência Início;Vigência Fim;Ativo;Descrição\n"
    "1;go;base_reduzida;8471;*;00;33,33;;;;01/01/2024;;sim;Informatica\n"
    "2;GO;credito_outorgado;;5,6;;;9,5%;;;2024-01-01;31/12/2024;s;\n"
    "3;GO;protege;;;;;;2;;01/01/2024;;1;PROTEGE\n"
    "4;GO;ciap;8471;;;;;;48;01/01/2024;;sim;\n"
)


def test_portuguese_sheet_with_semicolons():
    rules, errors = parse_rules_csv(SHEET_PT.encode("utf-8-sig"))
    assert errors == []
    assert [r.kind for r in rules] == [
        RuleKind.REDUCED_BASE, RuleKind.PRESUMED_CREDIT, RuleKind.REGIONAL_SURTAX, RuleKind.FIXED_ASSET_CREDIT,
    ]
    first = rules[0]
    assert first.jurisdiction == "GO"
    assert first.reduction_pct == Decimal("33.33")
    assert first.ncm_match == ("8471",)
    assert first.cst_match == ("00",)
    assert first.description == "Informatica"
    assert rules[1].credit_pct == Decimal("9.5")
    assert rules[1].valid_to == date(2024, 12, 31)
    assert rules[3].recovery_months == 48


def test_cp1252_and_commas():
    text = "id,jurisdiction,kind,reduction_pct,valid_from,description\n7,SP,ReducedBase,10,2024-01-01,Máquinas\n"
    rules, errors = parse_rules_csv(text.encode("cp1252"))
    assert errors == []
    assert rules[0].description == "Máquinas"


def test_row_errors_are_collected():
    text = (
        "id;uf;tipo;reducao;vigencia_inicio\n"
        "1;SP;base_reduzida;;2024-01-01\n"
        "2;SP;base_reduzida;abc;2024-01-01\n"
        "3;SP;base_reduzida;10;2024-01-01\n"
        "3;SP;base_reduzida;20;2024-01-01\n"
    )
    rules, errors = parse_rules_csv(text.encode())
    assert [r.id for r in rules] == [3]
    assert [e["row_number"] for e in errors] == [2, 3, 5]


def test_missing_columns():
    rules, errors = parse_rules_csv(b"id;uf\n1;SP\n")
    assert rules == []
    assert "Missing required columns" in errors[0]["error"]


def test_value_helpers():
    assert parse_decimal_ptbr("1.234,56") == Decimal("1234.56")
    assert parse_decimal_ptbr("12%") == Decimal("12")
    assert parse_decimal_ptbr("") is None
    assert parse_date_any("05/03/2024") == date(2024, 3, 5)
