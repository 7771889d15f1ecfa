"""
localvl :: Test Rotary Embeddings

  - cos/sin shapes and the position-0 identity
  - rotation preserves norms and relative-position dot products
  - multi-axis rotary with identical axes equals plain rotary
  - section validation

Run:
    python -m pytest tests/test_rotary.py -v
"""

import pytest
import torch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from localvl.layers.rotary import (
    RotaryTable,
    apply_rotary,
    apply_rotary_pos_emb,
    rotate_half,
)


class TestRotaryTable:

    def test_shapes(self):
        table = RotaryTable(16, theta=10000.0)
        pos = torch.arange(5).unsqueeze(0)
        cos, sin = table(pos)
        assert cos.shape == (1, 5, 16)
        assert sin.shape == (1, 5, 16)

    def test_position_zero_is_identity(self):
        table = RotaryTable(8)
        cos, sin = table(torch.zeros(1, 1, dtype=torch.long))
        x = torch.randn(1, 2, 1, 8)
        out = apply_rotary(x, cos.unsqueeze(1), sin.unsqueeze(1))
        assert torch.allclose(out, x, atol=1e-6)

    def test_odd_dim_rejected(self):
        with pytest.raises(ValueError):
            RotaryTable(7)

    def test_output_dtype(self):
        cos, sin = RotaryTable(8)(torch.arange(3).unsqueeze(0), dtype=torch.float16)
        assert cos.dtype == torch.float16 and sin.dtype == torch.float16

    def test_rotate_half(self):
        x = torch.tensor([1.0, 2.0, 3.0, 4.0])
        assert rotate_half(x).tolist() == [-3.0, -4.0, 1.0, 2.0]


class TestApplyRotary:

    def test_norm_preserved(self):
        table = RotaryTable(32)
        cos, sin = table(torch.arange(10).unsqueeze(0))
        q = torch.randn(1, 4, 10, 32)
        k = torch.randn(1, 2, 10, 32)
        q_rot, k_rot = apply_rotary_pos_emb(q, k, cos, sin)
        assert torch.allclose(q_rot.norm(dim=-1), q.norm(dim=-1), atol=1e-4)
        assert torch.allclose(k_rot.norm(dim=-1), k.norm(dim=-1), atol=1e-4)

    def test_relative_position(self):
        """<rot(q, m), rot(k, n)> depends only on m - n."""
        table = RotaryTable(16)
        q = torch.randn(16)
        k = torch.randn(16)

        def score(m, n):
            cos, sin = table(torch.tensor([[m, n]]))
            qm = apply_rotary(q, cos[0, 0], sin[0, 0])
            kn = apply_rotary(k, cos[0, 1], sin[0, 1])
            return float(qm @ kn)

        assert abs(score(5, 2) - score(13, 10)) < 1e-4

    def test_inverse_rotation(self):
        cos, sin = RotaryTable(32, theta=1e6)(torch.arange(50).unsqueeze(0))
        q = torch.randn(1, 4, 50, 32)
        back = apply_rotary(apply_rotary(q, cos.unsqueeze(1), sin.unsqueeze(1)),
                            cos.unsqueeze(1), -sin.unsqueeze(1))
        assert torch.allclose(back, q, atol=1e-5)

    def test_keeps_input_dtype(self):
        cos, sin = RotaryTable(8)(torch.arange(4).unsqueeze(0))
        x = torch.randn(1, 1, 4, 8, dtype=torch.bfloat16)
        out = apply_rotary(x, cos.unsqueeze(1), sin.unsqueeze(1))
        assert out.dtype == torch.bfloat16


class TestMultiAxisRotary:

    def test_identical_axes_match_plain(self):
        table = RotaryTable(16)
        pos = torch.arange(7).unsqueeze(0)
        cos_plain, sin_plain = table(pos)
        cos_m, sin_m = table(pos.unsqueeze(0).expand(3, -1, -1), sections=(2, 3, 3))
        assert torch.allclose(cos_plain, cos_m)
        assert torch.allclose(sin_plain, sin_m)

    def test_two_dim_ids_broadcast(self):
        table = RotaryTable(16)
        pos = torch.arange(4).unsqueeze(0)
        cos_a, _ = table(pos, sections=(4, 2, 2))
        cos_b, _ = table(pos.unsqueeze(0).expand(3, -1, -1), sections=(4, 2, 2))
        assert torch.allclose(cos_a, cos_b)

    def test_sections_pick_their_axis(self):
        table = RotaryTable(16)
        t = torch.zeros(1, 1, dtype=torch.long)
        h = torch.full((1, 1), 3)
        w = torch.full((1, 1), 5)
        cos, _ = table(torch.stack([t, h, w]), sections=(2, 3, 3))
        freqs = table.inv_freq
        expected = torch.cat([
            torch.zeros(2),
            3.0 * freqs[2:5],
            5.0 * freqs[5:8],
        ]).cos()
        assert torch.allclose(cos[0, 0, :8], expected, atol=1e-6)
        assert torch.allclose(cos[0, 0, 8:], expected, atol=1e-6)

    def test_sections_must_sum(self):
        with pytest.raises(ValueError):
            RotaryTable(16)(torch.arange(3).unsqueeze(0), sections=(2, 2, 2))

    def test_three_sections_required(self):
        with pytest.raises(ValueError):
            RotaryTable(16)(torch.arange(3).unsqueeze(0), sections=(4, 4))

    def test_plain_ignores_extra_axes(self):
        table = RotaryTable(8)
        pos = torch.stack([torch.arange(3).unsqueeze(0)] * 3)
        cos_a, _ = table(pos)
        cos_b, _ = table(pos[0])
        assert torch.allclose(cos_a, cos_b)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
