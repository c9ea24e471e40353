"""Tests for raw continuous data: reading → writing → calibration → Recording → CLI."""

import numpy as np
import pytest

from fiffkit import FiffWriter, Recording, open_fiff, open_raw, start_writing_raw
from fiffkit.errors import (
    CorruptPayload,
    DimensionMismatch,
    SampleRangeOutOfBounds,
    TagNotFound,
    TruncatedFile,
)
from fiffkit.raw import RawWriter
from fiffkit.storage.format import (
    DEFAULT_MAX_BUFFER_BYTES,
    FIFF_DATA_BUFFER,
    FIFF_DATA_SKIP,
    FIFF_FIRST_SAMPLE,
    FIFFB_MEAS,
    FIFFB_RAW_DATA,
    FIFFB_SMSH_RAW_DATA,
    FIFFT_DAU_PACK16,
    FIFFT_FLOAT,
    FIFFV_EEG_CH,
    FIFFV_STIM_CH,
)
from fiffkit.storage.meas_info import write_meas_info
from fiffkit.utils.schema import ChannelInfo, MeasInfo


def _info(cals=(1.0, 2.0, 0.5), sfreq=1000.0):
    chs = [
        ChannelInfo(scanno=k + 1, logno=k + 1, kind=FIFFV_EEG_CH, cal=c, ch_name=f"EEG {k + 1:03d}")
        for k, c in enumerate(cals)
    ]
    return MeasInfo(nchan=len(chs), sfreq=sfreq, chs=chs)


def _signal(nchan, nsamp, seed=0):
    return np.random.default_rng(seed).standard_normal((nchan, nsamp))


def _write_raw(path, info, data, **kwargs):
    with start_writing_raw(path, info, **kwargs) as w:
        w.write_raw_buffer(data)
    return path


def _write_buffers(path, info, parts, block_kind=FIFFB_RAW_DATA, first_sample=0):
    """Write a raw file by hand. ``parts`` holds (nchan, nsamp) arrays or ints for DATA_SKIP."""
    with FiffWriter(path) as w:
        w.start_block(FIFFB_MEAS)
        write_meas_info(w, info)
        w.start_block(block_kind)
        w.write_int(FIFF_FIRST_SAMPLE, first_sample)
        for part in parts:
            if isinstance(part, int):
                w.write_int(FIFF_DATA_SKIP, part)
            else:
                w.write_float(FIFF_DATA_BUFFER, np.ascontiguousarray(np.asarray(part).T))
        w.end_block(block_kind)
        w.end_block(FIFFB_MEAS)
    return path


# ── Reading ────────────────────────────────────────────────


class TestRawRead:
    def test_chunked_scenario(self, tmp_path):
        info = _info()
        data = _signal(3, 1000)
        path = _write_raw(tmp_path / "sc_raw.fif", info, data, max_buffer_bytes=200 * 3 * 4)

        with open_raw(path) as raw:
            assert len(raw.buffers) == 5
            assert all(b.nsamp == 200 for b in raw.buffers)
            assert (raw.first_samp, raw.last_samp) == (0, 999)

            block = raw.read_samples(150, 250)
            assert block.shape == (3, 101)
            assert block.dtype == np.float64
            np.testing.assert_allclose(block, data[:, 150:251], rtol=1e-6)

    def test_default_buffer_size(self, tmp_path):
        path = _write_raw(tmp_path / "one_raw.fif", _info(), _signal(3, 1000))
        with open_raw(path) as raw:
            assert len(raw.buffers) == 1
            assert raw.buffers[0].entry.size <= DEFAULT_MAX_BUFFER_BYTES

    def test_read_across_many_buffers(self, tmp_path):
        data = _signal(3, 1000, seed=1)
        path = _write_raw(tmp_path / "many_raw.fif", _info(), data, max_buffer_bytes=64 * 3 * 4)

        with open_raw(path) as raw:
            assert len(raw.buffers) == 16
            assert raw.buffers[-1].nsamp == 1000 - 15 * 64
            for first, last in [(0, 0), (63, 64), (100, 900), (999, 999), (0, 999)]:
                np.testing.assert_allclose(
                    raw.read_samples(first, last), data[:, first:last + 1], rtol=1e-6
                )

    def test_only_overlapping_buffers_are_read(self, tmp_path, monkeypatch):
        path = _write_raw(tmp_path / "lazy_raw.fif", _info(), _signal(3, 1000), max_buffer_bytes=2400)
        with open_raw(path) as raw:
            seen = []
            original = raw._read_buffer
            monkeypatch.setattr(raw, "_read_buffer", lambda buf: seen.append(buf.first) or original(buf))
            raw.read_samples(390, 410)
            assert seen == [200, 400]

    def test_out_of_range(self, tmp_path):
        path = _write_raw(tmp_path / "oob_raw.fif", _info(), _signal(3, 100))
        with open_raw(path) as raw:
            with pytest.raises(SampleRangeOutOfBounds):
                raw.read_samples(-1, 10)
            with pytest.raises(SampleRangeOutOfBounds):
                raw.read_samples(50, 100)
            with pytest.raises(IndexError):
                raw.read_samples(20, 10)

    def test_first_sample_offset(self, tmp_path):
        data = _signal(3, 300)
        path = _write_raw(tmp_path / "off_raw.fif", _info(), data, first_sample=5000,
                          max_buffer_bytes=1200)
        with open_raw(path) as raw:
            assert (raw.first_samp, raw.last_samp) == (5000, 5299)
            assert raw.n_times == len(raw) == 300
            np.testing.assert_allclose(raw.read_samples(5100, 5199), data[:, 100:200], rtol=1e-6)
            np.testing.assert_allclose(raw[100:200], data[:, 100:200], rtol=1e-6)
            np.testing.assert_allclose(raw.times(5000, 5001), [5.0, 5.001])
            with pytest.raises(SampleRangeOutOfBounds):
                raw.read_samples(0, 10)

    def test_picks(self, tmp_path):
        data = _signal(3, 200)
        path = _write_raw(tmp_path / "picks_raw.fif", _info(), data)
        with open_raw(path) as raw:
            picked = raw.read_samples(10, 19, picks=[2, 0])
            assert picked.shape == (2, 10)
            np.testing.assert_allclose(picked, data[[2, 0], 10:20], rtol=1e-6)
            with pytest.raises(DimensionMismatch):
                raw.read_samples(10, 19, picks=[3])

    def test_slicing(self, tmp_path):
        data = _signal(3, 50)
        path = _write_raw(tmp_path / "slice_raw.fif", _info(), data)
        with open_raw(path) as raw:
            np.testing.assert_allclose(raw[-10:], data[:, -10:], rtol=1e-6)
            assert raw[5:5].shape == (3, 0)
            with pytest.raises(TypeError):
                raw[3]
            with pytest.raises(ValueError):
                raw[::2]

    def test_data_skip_reads_zeros(self, tmp_path):
        info = _info(cals=(1.0, 1.0))
        a = np.full((2, 5), 1.0)
        b = np.full((2, 5), 2.0)
        path = _write_buffers(tmp_path / "skip_raw.fif", info, [a, 2, b], first_sample=10)

        with open_raw(path) as raw:
            assert (raw.first_samp, raw.last_samp) == (10, 29)
            assert [buf.entry is None for buf in raw.buffers] == [False, True, False]
            data = raw.read_samples(10, 29)
            np.testing.assert_array_equal(data[:, :5], 1.0)
            np.testing.assert_array_equal(data[:, 5:15], 0.0)
            np.testing.assert_array_equal(data[:, 15:], 2.0)

    def test_maxshield_requires_opt_in(self, tmp_path):
        info = _info()
        path = _write_buffers(tmp_path / "smsh_raw.fif", info, [_signal(3, 10)],
                              block_kind=FIFFB_SMSH_RAW_DATA)
        with pytest.raises(TagNotFound):
            open_raw(path)
        with open_raw(path, allow_maxshield=True) as raw:
            assert raw.raw_block.kind == FIFFB_SMSH_RAW_DATA
            assert raw.n_times == 10

    def test_no_raw_block(self, tmp_path):
        path = tmp_path / "info_only.fif"
        with FiffWriter(path) as w:
            w.start_block(FIFFB_MEAS)
            write_meas_info(w, _info())
            w.end_block(FIFFB_MEAS)
        with pytest.raises(TagNotFound):
            open_raw(path)

    def test_corrupt_buffer_size(self, tmp_path):
        path = tmp_path / "bad_raw.fif"
        with FiffWriter(path) as w:
            w.start_block(FIFFB_MEAS)
            write_meas_info(w, _info())
            w.start_block(FIFFB_RAW_DATA)
            w.write_float(FIFF_DATA_BUFFER, np.zeros(7, dtype=np.float32))
            w.end_block(FIFFB_RAW_DATA)
            w.end_block(FIFFB_MEAS)
        with pytest.raises(CorruptPayload):
            open_raw(path)

    def test_read_after_close(self, tmp_path):
        path = _write_raw(tmp_path / "closed_raw.fif", _info(), _signal(3, 10))
        raw = open_raw(path)
        raw.close()
        with pytest.raises(RuntimeError):
            raw.read_samples(0, 5)

    def test_index_and_walk_open_the_same(self, tmp_path):
        data = _signal(3, 500)
        path = _write_raw(tmp_path / "walk_raw.fif", _info(), data, max_buffer_bytes=1200)
        with open_raw(path) as indexed, open_raw(path, use_index=False) as walked:
            assert indexed.buffers == walked.buffers
            np.testing.assert_array_equal(indexed.read_samples(0, 499), walked.read_samples(0, 499))


# ── Writing ────────────────────────────────────────────────


class TestRawWrite:
    def test_calibration_symmetry(self, tmp_path):
        rng = np.random.default_rng(7)
        cals = rng.uniform(1e-13, 1e-3, size=4)
        info = _info(cals=cals)
        data = rng.standard_normal((4, 300)) * cals[:, np.newaxis] * 100
        path = _write_raw(tmp_path / "cal_raw.fif", info, data)

        with open_raw(path) as raw:
            np.testing.assert_allclose(raw.read_samples(0, 299), data, rtol=1e-6)

    def test_range_is_part_of_calibration(self, tmp_path):
        chs = [ChannelInfo(kind=FIFFV_EEG_CH, range=0.5, cal=4.0, ch_name="EEG 001")]
        info = MeasInfo(nchan=1, sfreq=100.0, chs=chs)
        data = np.array([[2.0, 4.0, -6.0]])
        path = _write_raw(tmp_path / "range_raw.fif", info, data)

        with open_fiff(path) as reader:
            ent = reader.tree.entries(reader.tree.find_block(FIFFB_RAW_DATA), FIFF_DATA_BUFFER)[0]
            np.testing.assert_array_equal(reader.read_value(ent), [1.0, 2.0, -3.0])
        with open_raw(path) as raw:
            assert raw.info.chs[0].range == 0.5
            np.testing.assert_array_equal(raw.read_samples(0, 2), data)

    def test_selection_and_calibration_override(self, tmp_path):
        info = _info()
        data = _signal(2, 100)
        path = _write_raw(tmp_path / "sel_raw.fif", info, data, sel=[2, 0], calibration=[0.25, 4.0])

        with open_raw(path) as raw:
            assert raw.ch_names == ["EEG 003", "EEG 001"]
            assert [ch.cal for ch in raw.info.chs] == [0.25, 4.0]
            assert [ch.range for ch in raw.info.chs] == [1.0, 1.0]
            assert [ch.scanno for ch in raw.info.chs] == [1, 2]
            np.testing.assert_allclose(raw.cals, [0.25, 4.0])
            np.testing.assert_allclose(raw.read_samples(0, 99), data, rtol=1e-6)

    def test_bad_calibration(self, tmp_path):
        info = _info()
        with pytest.raises(DimensionMismatch):
            RawWriter(tmp_path / "x.fif", info, calibration=[1.0, 2.0])
        with pytest.raises(DimensionMismatch):
            RawWriter(tmp_path / "x.fif", info, calibration=[1.0, 0.0, 1.0])
        with pytest.raises(DimensionMismatch):
            RawWriter(tmp_path / "x.fif", info, sel=[0, 3])
        with pytest.raises(ValueError):
            RawWriter(tmp_path / "x.fif", info, fmt="half")
        assert not (tmp_path / "x.fif").exists()

    def test_buffer_shape(self, tmp_path):
        w = start_writing_raw(tmp_path / "shape_raw.fif", _info())
        with pytest.raises(DimensionMismatch):
            w.write_raw_buffer(np.zeros((2, 10)))
        with pytest.raises(DimensionMismatch):
            w.write_raw_buffer(np.zeros(30))
        w.finish_writing_raw()

    def test_short_format(self, tmp_path):
        info = _info()
        stored = np.random.default_rng(3).integers(-1000, 1000, size=(3, 250))
        data = stored * info.cals[:, np.newaxis]
        path = _write_raw(tmp_path / "short_raw.fif", info, data, fmt="short", max_buffer_bytes=600)

        with open_raw(path) as raw:
            assert {b.entry.type for b in raw.buffers} == {FIFFT_DAU_PACK16}
            assert len(raw.buffers) == 3
            np.testing.assert_array_equal(raw.read_samples(0, 249), data)

    @pytest.mark.parametrize("fmt", ["single", "double", "int"])
    def test_other_formats(self, tmp_path, fmt):
        info = _info()
        data = np.arange(30, dtype=np.float64).reshape(3, 10) * info.cals[:, np.newaxis]
        path = _write_raw(tmp_path / f"{fmt}_raw.fif", info, data, fmt=fmt)
        with open_raw(path) as raw:
            np.testing.assert_allclose(raw.read_samples(0, 9), data, rtol=1e-6)

    def test_chunking_follows_buffer_limit(self, tmp_path):
        w = start_writing_raw(tmp_path / "chunk_raw.fif", _info(), max_buffer_bytes=1000)
        assert w.chunk_samples == 1000 // 12
        w.write_raw_buffer(_signal(3, 200))
        w.write_raw_buffer(_signal(3, 50))
        assert w.samples_written == 250
        w.finish_writing_raw()

        with open_raw(tmp_path / "chunk_raw.fif") as raw:
            assert all(b.entry.size <= 1000 for b in raw.buffers)
            assert raw.n_times == 250

    def test_file_layout(self, tmp_path):
        path = _write_raw(tmp_path / "layout_raw.fif", _info(), _signal(3, 10), first_sample=42)
        with open_fiff(path) as reader:
            tree = reader.tree
            meas = tree.find_block(FIFFB_MEAS)
            raw_block = tree.find_block(FIFFB_RAW_DATA, meas)
            assert tree.parent(raw_block) is meas
            assert reader.tag_value(raw_block, FIFF_FIRST_SAMPLE) == 42
            buffers = tree.entries(raw_block, FIFF_DATA_BUFFER)
            assert len(buffers) == 1
            assert buffers[0].type == FIFFT_FLOAT

    def test_unfinished_file(self, tmp_path):
        path = tmp_path / "partial_raw.fif"
        w = start_writing_raw(path, _info())
        w.write_raw_buffer(_signal(3, 10))
        w.close()
        with pytest.raises(TruncatedFile):
            open_raw(path)

    def test_exception_in_context(self, tmp_path):
        path = tmp_path / "abort_raw.fif"
        with pytest.raises(RuntimeError):
            with start_writing_raw(path, _info()) as w:
                w.write_raw_buffer(_signal(3, 10))
                raise RuntimeError("acquisition stopped")
        with pytest.raises(TruncatedFile):
            open_raw(path)

    def test_copy_preserves_header(self, tmp_path):
        info = _info().model_copy(update={"bads": ["EEG 002"], "lowpass": 100.0})
        src = _write_raw(tmp_path / "src_raw.fif", info, _signal(3, 40))
        with open_raw(src) as raw:
            dst = _write_raw(tmp_path / "dst_raw.fif", raw.info, raw.read_samples(0, 39))
        with open_raw(src) as a, open_raw(dst) as b:
            assert a.info.chs == b.info.chs
            assert b.info.bads == ["EEG 002"]
            assert b.info.lowpass == 100.0
            np.testing.assert_array_equal(a.read_samples(0, 39), b.read_samples(0, 39))


# ── Recording ──────────────────────────────────────────────


class TestRecording:
    @pytest.fixture
    def sample_recording(self, tmp_path):
        chs = [
            ChannelInfo(scanno=1, kind=FIFFV_EEG_CH, cal=2.0, ch_name="EEG 001"),
            ChannelInfo(scanno=2, kind=FIFFV_EEG_CH, cal=0.5, ch_name="EEG 002"),
            ChannelInfo(scanno=3, kind=FIFFV_STIM_CH, ch_name="STI 014"),
        ]
        info = MeasInfo(nchan=3, sfreq=100.0, chs=chs, bads=["EEG 002"])
        data = np.vstack([
            np.arange(200) * 2.0,
            np.sin(np.arange(200) / 10.0),
            (np.arange(200) % 50 == 0).astype(float),
        ])
        path = _write_raw(tmp_path / "sample_raw.fif", info, data, first_sample=1000,
                          max_buffer_bytes=480)
        return path, data

    def test_properties(self, sample_recording):
        path, _ = sample_recording
        with Recording(path) as r:
            assert r.name == "sample_raw"
            assert r.channels == ["EEG 001", "EEG 002", "STI 014"]
            assert r.num_samples == len(r) == 200
            assert r.first_samp == 1000
            assert r.sfreq == 100.0
            assert r.duration == pytest.approx(2.0)
            assert r.dev_head_t is None
            assert r.tree.find_block(FIFFB_RAW_DATA) is not None

    def test_index(self, sample_recording):
        path, data = sample_recording
        with Recording(path) as r:
            frame = r[50]
            assert set(frame) == {"EEG 001", "EEG 002", "STI 014"}
            assert frame["EEG 001"] == pytest.approx(100.0)
            assert frame["STI 014"] == 1.0
            assert r[-1]["EEG 001"] == pytest.approx(data[0, -1])

    def test_slice(self, sample_recording):
        path, data = sample_recording
        with Recording(path) as r:
            window = r[45:55]
            assert window["EEG 002"].shape == (10,)
            np.testing.assert_allclose(window["EEG 002"], data[1, 45:55], rtol=1e-6)

    def test_channel(self, sample_recording):
        path, data = sample_recording
        with Recording(path) as r:
            np.testing.assert_allclose(r.channel("EEG 001"), data[0], rtol=1e-6)
            np.testing.assert_allclose(r.channel("EEG 001", 10, 20), data[0, 10:20], rtol=1e-6)
            assert r.channel("EEG 001", 20, 10).shape == (0,)
            np.testing.assert_allclose(r.times(0, 3), [10.0, 10.01, 10.02])

    def test_channel_not_found(self, sample_recording):
        path, _ = sample_recording
        with Recording(path) as r:
            with pytest.raises(KeyError):
                r.channel("MEG 0113")

    def test_summary(self, sample_recording):
        path, _ = sample_recording
        with Recording(path) as r:
            text = str(r)
            assert "sample_raw" in text
            assert "Samples: 200" in text
            assert "Bad channels: EEG 002" in text
            assert "sample_raw" in repr(r)


# ── CLI ────────────────────────────────────────────────────


class TestCLI:
    @pytest.fixture
    def raw_file(self, tmp_path):
        return _write_raw(tmp_path / "cli_raw.fif", _info(), _signal(3, 120), max_buffer_bytes=480)

    def test_cli_info(self, raw_file):
        from click.testing import CliRunner

        from fiffkit.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["info", str(raw_file)])
        assert result.exit_code == 0
        assert "cli_raw" in result.output
        assert "EEG 002" in result.output

    def test_cli_info_json(self, raw_file):
        from click.testing import CliRunner

        from fiffkit.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["info", str(raw_file), "--json"])
        assert result.exit_code == 0
        info = MeasInfo.from_json(result.output)
        assert info.ch_names == ["EEG 001", "EEG 002", "EEG 003"]

    def test_cli_tree(self, raw_file):
        from click.testing import CliRunner

        from fiffkit.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["tree", str(raw_file)])
        assert result.exit_code == 0
        assert "meas_info" in result.output
        assert "raw_data" in result.output

    def test_cli_dir(self, raw_file):
        from click.testing import CliRunner

        from fiffkit.cli.main import cli

        runner = CliRunner()
        indexed = runner.invoke(cli, ["dir", str(raw_file), "--limit", "0"])
        walked = runner.invoke(cli, ["dir", str(raw_file), "--walk", "--limit", "0"])
        assert indexed.exit_code == 0
        assert walked.exit_code == 0
        assert indexed.output == walked.output

    def test_cli_copy(self, raw_file, tmp_path):
        from click.testing import CliRunner

        from fiffkit.cli.main import cli

        out = tmp_path / "copy_raw.fif"
        runner = CliRunner()
        result = runner.invoke(
            cli, ["copy", str(raw_file), str(out), "-c", "EEG 003", "-c", "EEG 001",
                  "--start", "20", "--end", "70", "--chunk", "16"]
        )
        assert result.exit_code == 0
        assert "Copied 50 samples" in result.output

        with open_raw(raw_file) as src, open_raw(out) as dst:
            assert dst.ch_names == ["EEG 003", "EEG 001"]
            assert dst.first_samp == 20
            np.testing.assert_allclose(
                dst.read_samples(20, 69), src.read_samples(20, 69, picks=[2, 0]), rtol=1e-6
            )

    def test_cli_copy_rejects_zero_chunk(self, raw_file, tmp_path):
        from click.testing import CliRunner

        from fiffkit.cli.main import cli

        out = tmp_path / "zero_raw.fif"
        runner = CliRunner()
        result = runner.invoke(cli, ["copy", str(raw_file), str(out), "--chunk", "0"])
        assert result.exit_code == 2
        assert not isinstance(result.exception, ValueError)
        assert not out.exists()

    def test_cli_copy_unknown_channel(self, raw_file, tmp_path):
        from click.testing import CliRunner

        from fiffkit.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["copy", str(raw_file), str(tmp_path / "o.fif"), "-c", "X"])
        assert result.exit_code == 1

    def test_cli_not_fiff(self, tmp_path):
        from click.testing import CliRunner

        from fiffkit.cli.main import cli

        bogus = tmp_path / "bogus.fif"
        bogus.write_bytes(b"not a fiff file at all")
        runner = CliRunner()
        result = runner.invoke(cli, ["info", str(bogus)])
        assert result.exit_code == 1

    def test_cli_version(self):
        from click.testing import CliRunner

        from fiffkit.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert "0.1.0" in result.output
