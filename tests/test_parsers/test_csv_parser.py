"""Tests for the bank statement CSV parser using synthetic data."""

from pathlib import Path

from sean.parsers.csv_parser import BankCsvParser

HEADER = "Date,Description,Amount,Reference,Client,Debit\n"


def _write_csv(tmp_path: Path, rows: str, header: str = HEADER,
               filename: str = "statement.csv") -> Path:
    f = tmp_path / filename
    f.write_text(header + rows)
    return f


class TestDetect:
    def test_detects_bank_csv(self, tmp_path):
        assert BankCsvParser().detect(_write_csv(tmp_path, "")) is True

    def test_case_and_spacing_ignored(self, tmp_path):
        f = _write_csv(tmp_path, "", header=" DATE , description,AMOUNT\n")
        assert BankCsvParser().detect(f) is True

    def test_byte_order_mark(self, tmp_path):
        f = tmp_path / "bom.csv"
        f.write_text(HEADER, encoding="utf-8-sig")
        assert BankCsvParser().detect(f) is True

    def test_missing_column(self, tmp_path):
        f = _write_csv(tmp_path, "", header="Date,Description,Balance\n")
        assert BankCsvParser().detect(f) is False

    def test_missing_file(self, tmp_path):
        assert BankCsvParser().detect(tmp_path / "nope.csv") is False


class TestParse:
    def test_basic_row(self, tmp_path):
        f = _write_csv(tmp_path, "01/03/2024,ENGEN FUEL STATION SANDTON,-450.00,REF1,acme,\n")
        txns = BankCsvParser().parse(f)
        assert len(txns) == 1
        txn = txns[0]
        assert txn.date == "2024-03-01"
        assert txn.description == "ENGEN FUEL STATION SANDTON"
        assert txn.amount == -450.0
        assert txn.is_debit is None
        assert txn.reference == "REF1"
        assert txn.client_id == "acme"

    def test_debit_column(self, tmp_path):
        f = _write_csv(tmp_path, '2024-03-01,SALARY,"R 25,000.00",,,credit\n')
        txn = BankCsvParser().parse(f)[0]
        assert txn.amount == 25000.0
        assert txn.is_debit is False

    def test_default_client(self, tmp_path):
        f = _write_csv(tmp_path, "2024-03-01,UBER TRIP,-89.00,,,\n")
        assert BankCsvParser(client_id="c9").parse(f)[0].client_id == "c9"

    def test_minimal_columns(self, tmp_path):
        f = _write_csv(tmp_path, "2024-03-01,UBER TRIP,-89.00\n",
                       header="Date,Description,Amount\n")
        txn = BankCsvParser().parse(f)[0]
        assert txn.reference is None
        assert txn.client_id is None

    def test_bad_rows_skipped_and_counted(self, tmp_path):
        f = _write_csv(tmp_path, (
            "2024-03-01,UBER TRIP,-89.00,,,\n"
            "not a date,UBER TRIP,-89.00,,,\n"
            "2024-03-02,,-10.00,,,\n"
            "2024-03-03,WOOLWORTHS,abc,,,\n"
        ))
        parser = BankCsvParser()
        txns = parser.parse(f)
        assert len(txns) == 1
        assert parser.skipped_count == 3

    def test_row_with_extra_fields_skipped(self, tmp_path):
        f = _write_csv(tmp_path, (
            "2024-01-02,ENGEN FUEL,-450.00\n"
            "2024-01-03,SHOPRITE, SANDTON,-99.00\n"
        ), header="Date,Description,Amount\n")
        parser = BankCsvParser()
        txns = parser.parse(f)
        assert len(txns) == 1
        assert txns[0].description == "ENGEN FUEL"
        assert parser.skipped_count == 1

    def test_skipped_count_resets(self, tmp_path):
        parser = BankCsvParser()
        parser.parse(_write_csv(tmp_path, "bad,UBER,-1,,,\n", filename="a.csv"))
        parser.parse(_write_csv(tmp_path, "2024-03-01,UBER,-1,,,\n", filename="b.csv"))
        assert parser.skipped_count == 0

    def test_empty_file(self, tmp_path):
        assert BankCsvParser().parse(_write_csv(tmp_path, "")) == []
