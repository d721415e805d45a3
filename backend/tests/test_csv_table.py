"""Tests for GTFS CSV decoding and the row accessors."""

import logging
import math

import pandas as pd

from tripfinder.csv_table import get_float, get_int, get_optional_int, get_str, parse_rows, parse_table


class TestParseRows:
    def test_well_formed_rows_are_all_returned(self):
        text = "stop_id,stop_name,stop_lat\n1,Rondo Mogilskie,50.06\n2,Teatr Słowackiego,50.064\n3,Bagatela,50.063\n"
        rows = parse_rows(text)
        assert len(rows) == 3
        assert rows[1] == {"stop_id": "2", "stop_name": "Teatr Słowackiego", "stop_lat": "50.064"}

    def test_commas_inside_quotes_are_not_separators(self):
        text = 'route_id,route_long_name\nR1,"Kurdwanów P+R, Nowy Bieżanów"\n'
        rows = parse_rows(text)
        assert rows == [{"route_id": "R1", "route_long_name": "Kurdwanów P+R, Nowy Bieżanów"}]

    def test_values_and_headers_are_unquoted_and_trimmed(self):
        text = '"stop_id", "stop_name"\n "7" ,  "Wawel"  \n'
        rows = parse_rows(text)
        assert rows == [{"stop_id": "7", "stop_name": "Wawel"}]

    def test_malformed_rows_are_dropped_without_affecting_later_rows(self, caplog):
        text = "a,b,c\n1,2,3\n1,2\n1,2,3,4\n4,5,6\n"
        with caplog.at_level(logging.WARNING, logger="tripfinder.csv"):
            rows = parse_rows(text, "stops.txt")
        assert rows == [{"a": "1", "b": "2", "c": "3"}, {"a": "4", "b": "5", "c": "6"}]
        assert "dropped 2 malformed rows" in caplog.text
        assert "stops.txt" in caplog.text

    def test_unterminated_quote_stays_on_its_line(self):
        text = 'stop_id,stop_name\n1,"Rondo Mogilskie\n2,Wawel\n3,Bagatela\n4,Teatr\n'
        rows = parse_rows(text)
        assert [r["stop_id"] for r in rows] == ["1", "2", "3", "4"]
        assert rows[0]["stop_name"] == "Rondo Mogilskie"
        assert rows[3] == {"stop_id": "4", "stop_name": "Teatr"}

    def test_odd_quotes_inside_fields_do_not_leak(self, caplog):
        text = (
            'stop_id,stop_name\n'
            '1,Plac "Centralny\n'
            '2,"Bagatela, Teatr\n'
            '3,Wawel,"Zamek\n'
            '4,Kleparz\n'
        )
        with caplog.at_level(logging.WARNING, logger="tripfinder.csv"):
            rows = parse_rows(text, "stops.txt")
        assert rows == [
            {"stop_id": "1", "stop_name": "Plac Centralny"},
            {"stop_id": "2", "stop_name": "Bagatela, Teatr"},
            {"stop_id": "4", "stop_name": "Kleparz"},
        ]
        assert "dropped 1 malformed rows" in caplog.text

    def test_empty_values_are_kept(self):
        rows = parse_rows("a,b,c\n1,,\n")
        assert rows == [{"a": "1", "b": "", "c": ""}]

    def test_header_only_yields_no_rows(self):
        assert parse_rows("stop_id,stop_name\n") == []

    def test_empty_input_yields_no_rows(self):
        assert parse_rows("") == []
        assert parse_rows("   \n") == []

    def test_windows_line_endings_and_bom(self):
        text = "\ufeffstop_id,stop_name\r\n1,Wawel\r\n"
        assert parse_rows(text) == [{"stop_id": "1", "stop_name": "Wawel"}]


class TestParseTable:
    def test_all_columns_are_strings(self):
        frame = parse_table("stop_id,stop_sequence\n001,1\n002,2\n")
        assert list(frame.columns) == ["stop_id", "stop_sequence"]
        assert frame["stop_id"].tolist() == ["001", "002"]
        assert frame["stop_sequence"].tolist() == ["1", "2"]

    def test_header_only_has_columns_but_no_rows(self):
        frame = parse_table("trip_id,stop_id\n")
        assert frame.empty
        assert list(frame.columns) == ["trip_id", "stop_id"]

    def test_empty_input_is_empty_frame(self):
        assert parse_table("").empty


class TestAccessors:
    row = {"stop_lat": "50.06", "stop_lon": "", "route_type": "3", "odd": "abc", "spaced": "  x  ", "fl": "2.0"}

    def test_get_str(self):
        assert get_str(self.row, "spaced") == "x"
        assert get_str(self.row, "missing") == ""
        assert get_str(self.row, "stop_lon", "n/a") == "n/a"

    def test_get_float(self):
        assert get_float(self.row, "stop_lat") == 50.06
        assert math.isnan(get_float(self.row, "stop_lon"))
        assert math.isnan(get_float(self.row, "odd"))
        assert get_float(self.row, "missing", 0.0) == 0.0

    def test_get_int(self):
        assert get_int(self.row, "route_type") == 3
        assert get_int(self.row, "fl") == 2
        assert get_int(self.row, "odd", 7) == 7
        assert get_int(self.row, "missing") == 0

    def test_get_optional_int(self):
        assert get_optional_int(self.row, "route_type") == 3
        assert get_optional_int(self.row, "stop_lon") is None
        assert get_optional_int(self.row, "odd") is None

    def test_accessors_accept_series(self):
        series = pd.Series(self.row)
        assert get_float(series, "stop_lat") == 50.06
        assert get_str(series, "missing", "-") == "-"
