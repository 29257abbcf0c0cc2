"""Neural Turing Machine memory: addressing, reading and writing with hand-written gradients.

Modules:
- head: per-timestep head parameters as views into one flat buffer
- addressing: similarity, content addressing, gating, shifting, refocusing, reading
- memory: the erase/add memory update and the bias-seeded initial state
- circuit: one timestep over all heads, and the chain of timesteps of a sequence
- ntm: PyTorch autograd bridge
- gradcheck: finite-difference checks of the backward passes
"""
