import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import math

import numpy as np
import pandas as pd
import pytest

from tpc_reco.clustering import ClusterNode
from tpc_reco.fitting import HelixParameters
from tpc_reco.geometry import LayerIndexAnnotator, UniformPadRowLayout, ZBinning
from tpc_reco.hit_pool import Hit, HitPool
from tpc_reco.predicates import HelixDistance, HitDistance, RadialGate, chi2_rphi_z, wrap_phi


def _hit(x, y, z, layer=0, index=0):
    return Hit(index=index, hit_id=index, position=np.array([x, y, z], dtype=float),
               var_rphi=0.01, var_z=0.25, layer=layer)


class _Track:
    def __init__(self, omega, tanl, phi0=0.0):
        self.params = HelixParameters(omega=omega, phi0=phi0, d0=0.0, z0=0.0, tan_lambda=tanl)


def test_wrap_phi():
    assert wrap_phi(math.pi) == pytest.approx(math.pi)
    assert wrap_phi(-math.pi) == pytest.approx(math.pi)
    assert wrap_phi(3 * math.pi / 2) == pytest.approx(-math.pi / 2)
    assert wrap_phi(0.25) == pytest.approx(0.25)


def test_chi2_rphi_z_wraps_across_pi():
    a = np.array([-100.0, 0.01, 10.0])
    b = np.array([-100.0, -0.01, 10.0])
    # 0.02 mm apart across the -x axis, not 2*pi*100
    assert chi2_rphi_z(a, b, 0.01, 0.25) == pytest.approx(0.04, rel=1e-3)
    assert chi2_rphi_z(a, a + np.array([0.0, 0.0, 1.0]), 0.01, 0.25) == pytest.approx(4.0)


def test_chi2_rphi_z_is_symmetric():
    h = np.array([500.0, 1.0, 10.0])
    p = np.array([506.0, 0.0, 10.2])
    assert chi2_rphi_z(h, p, 0.01, 0.25) == pytest.approx(chi2_rphi_z(p, h, 0.01, 0.25), rel=1e-12)
    # rho = 503, rphi offset ~1.006 mm
    assert chi2_rphi_z(h, p, 0.01, 0.25) == pytest.approx(101.36, rel=1e-3)
    a = np.array([-100.0, 0.01, 10.0])
    b = np.array([-90.0, -0.01, 12.0])
    assert chi2_rphi_z(a, b, 0.01, 0.25) == pytest.approx(chi2_rphi_z(b, a, 0.01, 0.25), rel=1e-12)


def test_hit_distance():
    pred = HitDistance(5.0)
    h0 = _hit(0.0, 0.0, 0.0, layer=0)
    h1 = _hit(3.0, 0.0, 0.0, layer=1)
    h2 = _hit(3.0, 0.0, 0.0, layer=0)
    assert pred(ClusterNode(h0, 4), ClusterNode(h1, 5))
    assert not pred(ClusterNode(h0, 4), ClusterNode(h1, 6))
    # same pad row never links
    assert not pred(ClusterNode(h0, 4), ClusterNode(h2, 4))
    # strict cut
    assert not HitDistance(3.0)(ClusterNode(h0, 0), ClusterNode(h1, 0))


def test_helix_distance():
    pred = HelixDistance(0.1, 0.2, 0.1)
    a = ClusterNode(_Track(1 / 500.0, 0.5), 0)
    b = ClusterNode(_Track(1 / 505.0, 0.51), 0)
    assert pred(a, b)
    # different curvature sign
    assert not pred(a, ClusterNode(_Track(-1 / 500.0, 0.5), 0))
    # opposite dip
    assert not pred(a, ClusterNode(_Track(1 / 500.0, -0.5), 0))
    # far buckets
    assert not pred(a, ClusterNode(_Track(1 / 505.0, 0.51), 2))
    # equal slopes always pass the slope test
    flat = ClusterNode(_Track(1 / 500.0, 0.0), 0)
    assert pred(flat, ClusterNode(_Track(1 / 505.0, 0.0), 1))
    # centres too far apart
    assert not pred(a, ClusterNode(_Track(1 / 500.0, 0.5, phi0=1.0), 0))


def test_radial_gate_is_a_partition():
    gate = RadialGate(100.0, 500.0)
    hits = [_hit(50.0, 0.0, 0.0), _hit(150.0, 0.0, 0.0), _hit(50.0, 0.0, 700.0), _hit(100.0, 0.0, 600.0)]
    working, excluded = gate.split(hits)
    assert working == [hits[1], hits[2]]
    assert excluded == [hits[0], hits[3]]
    for h in hits:
        assert gate.keep(h) != gate.excluded(h)


def test_layout_and_annotation():
    layout = UniformPadRowLayout(390.0, 1740.0, 224)
    assert layout.n_rows == 224
    assert layout.row_radius(0) == pytest.approx(390.0 + 0.5 * layout.pitch)
    r = layout.row_radius(17)
    assert layout.layer_index_of(np.array([0.0, r, 0.0])) == 17
    assert layout.layer_index_of(np.array([10.0, 0.0, 0.0])) == 0
    assert layout.layer_index_of(np.array([5000.0, 0.0, 0.0])) == 223
    with pytest.raises(IndexError):
        layout.row_radius(224)

    zb = ZBinning(200, -2750.0, 2750.0)
    assert zb.bucket_of(-2750.0) == 0
    assert zb.bucket_of(0.0) == 100
    assert zb.bucket_of(1e6) == 199
    assert list(zb.buckets(np.array([-1e6, 0.0]))) == [0, 100]


def test_annotator_sets_layers_once():
    layout = UniformPadRowLayout(100.0, 200.0, 10)
    df = pd.DataFrame({"hit_id": [0, 1], "x": [105.0, 0.0], "y": [0.0, 195.0], "z": [0.0, 10.0],
                       "var_rphi": [0.01, 0.01], "var_z": [0.25, 0.25]})
    pool = HitPool(df)
    annotator = LayerIndexAnnotator(layout, ZBinning(10, -100.0, 100.0))
    annotator.annotate(pool)
    assert [h.layer for h in pool] == [0, 9]
    assert [h.zbucket for h in pool] == [5, 5]
    with pytest.raises(RuntimeError):
        annotator.annotate(pool)
