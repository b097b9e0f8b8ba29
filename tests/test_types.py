"""Tests for core data types and configuration."""

import math

import pytest
from shapely.geometry import LineString

from tilelines.types import (
    Feature,
    MergeConfig,
    MergedLine,
    MergeStats,
    NodeKey,
    SkippedGeometry,
    TagLengthLimit,
)


class TestMergeConfig:
    """Tests for MergeConfig dataclass."""

    def test_default_config(self):
        """Test default configuration values."""
        config = MergeConfig()
        assert config.tolerance == 0.0625
        assert config.buffer == 4.0
        assert config.extent == 256.0
        assert config.min_length == 0.0
        assert config.length_limit is None
        assert config.resimplify is False
        assert config.stub_min_length == 0.5
        assert config.id_key == "osm_way_ids"
        assert config.n_workers == 0
        assert config.strict_validation is False
        assert config.clipping_enabled is True

    def test_negative_buffer_disables_clipping(self):
        """Test that a negative buffer turns clipping off."""
        assert MergeConfig(buffer=-1).clipping_enabled is False
        assert MergeConfig(buffer=0).clipping_enabled is True

    def test_config_validation_non_negative(self):
        """Test that distances can be zero but not negative."""
        config = MergeConfig(tolerance=0.0, min_length=0.0, stub_min_length=0.0)
        assert config.tolerance == 0.0

        with pytest.raises(ValueError, match="tolerance must be non-negative"):
            MergeConfig(tolerance=-1.0)

        with pytest.raises(ValueError, match="min_length must be non-negative"):
            MergeConfig(min_length=-0.1)

        with pytest.raises(ValueError, match="stub_min_length must be non-negative"):
            MergeConfig(stub_min_length=-0.5)

    def test_config_validation_positive(self):
        """Test that extent and precision must be positive."""
        with pytest.raises(ValueError, match="extent must be positive"):
            MergeConfig(extent=0)

        with pytest.raises(ValueError, match="precision must be positive"):
            MergeConfig(precision=0)

        with pytest.raises(ValueError, match="buffer must be a finite number"):
            MergeConfig(buffer=math.inf)

    def test_length_limit_must_be_callable(self):
        """Test that a malformed length limit policy is rejected."""
        with pytest.raises(ValueError, match="length_limit must be callable"):
            MergeConfig(length_limit=12)

    def test_length_limit_for(self):
        """Test per-group length limits."""
        assert MergeConfig(min_length=3).length_limit_for({"highway": "track"}) == 3.0

        config = MergeConfig(min_length=3, length_limit=lambda tags: 8 if tags.get("highway") == "track" else 2)
        assert config.length_limit_for({"highway": "track"}) == 8.0
        assert config.length_limit_for({"highway": "lane"}) == 2.0

    def test_length_limit_for_rejects_bad_values(self):
        """Test that unusable policy results are configuration errors."""
        with pytest.raises(ValueError, match="non-numeric"):
            MergeConfig(length_limit=lambda tags: "long").length_limit_for({})

        with pytest.raises(ValueError, match="non-numeric"):
            MergeConfig(length_limit=lambda tags: math.nan).length_limit_for({})

        with pytest.raises(ValueError, match="negative"):
            MergeConfig(length_limit=lambda tags: -1).length_limit_for({})

        with pytest.raises(ValueError, match="length_limit failed"):
            MergeConfig(length_limit=lambda tags: tags["missing"]).length_limit_for({})

    def test_to_dict(self):
        """Test plain representation of the config."""
        config = MergeConfig(length_limit=TagLengthLimit("highway", {"track": 8.0}))
        data = config.to_dict()
        assert data['buffer'] == 4.0
        assert data['length_limit'] == {'key': 'highway', 'limits': {'track': 8.0}, 'default': 0.0}
        assert MergeConfig().to_dict()['length_limit'] is None


class TestTagLengthLimit:
    """Tests for TagLengthLimit policy."""

    def test_lookup(self):
        """Test limits looked up by tag value."""
        limit = TagLengthLimit("highway", {"track": 8.0, "path": 4.0}, default=1.0)
        assert limit({"highway": "track"}) == 8.0
        assert limit({"highway": "path"}) == 4.0
        assert limit({"highway": "lane"}) == 1.0
        assert limit({}) == 1.0


class TestFeature:
    """Tests for Feature dataclass."""

    def test_frozen(self):
        """Test that features cannot be modified in place."""
        feature = Feature(id=3, geometry=LineString([(0, 0), (1, 0)]), tags={"highway": "path"})
        with pytest.raises(AttributeError):
            feature.id = 4

    def test_default_tags(self):
        feature = Feature(id=3, geometry=LineString([(0, 0), (1, 0)]))
        assert feature.tags == {}


class TestNodeKey:
    """Tests for NodeKey."""

    def test_equality_and_order(self):
        """Test that node keys compare by grid cell."""
        assert NodeKey(1, 2) == NodeKey(1, 2)
        assert NodeKey(1, 2) < NodeKey(2, 0)
        assert len({NodeKey(1, 2), NodeKey(1, 2), NodeKey(2, 1)}) == 2

    def test_string_representation(self):
        """Test node key string representation."""
        assert str(NodeKey(3, -4)) == "3:-4"


class TestMergedLine:
    """Tests for MergedLine."""

    def test_properties(self):
        """Test derived properties of a merged line."""
        line = MergedLine(
            coords=((0.0, 0.0), (3.0, 0.0), (3.0, 4.0)),
            owners=(frozenset([1]), frozenset([1, 2]), frozenset([2])),
        )
        assert line.length == 7.0
        assert line.source_ids == {1, 2}
        assert line.to_linestring().equals(LineString([(0, 0), (3, 0), (3, 4)]))

    def test_owner_count_must_match(self):
        """Test that every coordinate needs an owner set."""
        with pytest.raises(ValueError, match="same length"):
            MergedLine(coords=((0.0, 0.0), (1.0, 0.0)), owners=(frozenset([1]),))


class TestMergeStats:
    """Tests for MergeStats."""

    def test_absorb(self):
        """Test folding per-group stats into tile stats."""
        total = MergeStats(input_count=4, group_count=2)
        group = MergeStats(merged_groups=1, output_count=1, lines_before_clip=2, lines_after_clip=3)
        group.skipped.append(SkippedGeometry(feature_id=7, reason="empty geometry"))

        total.absorb(group)
        total.absorb(MergeStats(passthrough_groups=1, output_count=1))

        assert total.input_count == 4
        assert total.merged_groups == 1
        assert total.passthrough_groups == 1
        assert total.output_count == 2
        assert total.lines_after_clip == 3
        assert total.invalid_geometry_count == 1
        assert str(total.skipped[0]) == "feature 7: empty geometry"
