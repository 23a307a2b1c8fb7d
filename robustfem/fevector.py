# fevector.py
# Copyright (C) 2025 Tobias Bode
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.

"""
Block structured coefficient vectors and sparse matrices.

Writes into an :class:`FEMatrix` are staged as coordinate triplets and become visible after
``flush()``, which sums duplicate entries into the compressed sparse row storage. Reading a
matrix with staged writes raises an UnflushedWriteError.
"""

from contextlib import contextmanager

import numpy as np
import scipy.sparse as sparse

from robustfem.spaces import interpolate
from robustfem.utility import UnflushedWriteError


class _AssemblyGuard:
    """Disallows nested assemblies into the same target."""
    _in_assembly = False

    @contextmanager
    def assembling(self):
        if self._in_assembly:
            raise UnflushedWriteError(f"{self} is already being assembled into.")
        self._in_assembly = True
        try:
            yield self
        finally:
            self._in_assembly = False


class FEVectorBlock:
    """
    View onto the coefficients of one finite element space inside an FEVector.

    Attributes:
      space (FESpace): The finite element space.
      offset (int): Position of the first coefficient in the full vector.
      name (str): Name of the block.
    """

    def __init__(self, parent, space, offset, name):
        self.parent = parent
        self.space = space
        self.offset = offset
        self.name = name

    def __repr__(self):
        return f"FEVectorBlock({self.name}, ndofs={self.ndofs}, offset={self.offset})"

    @property
    def ndofs(self):
        return self.space.ndofs

    @property
    def last(self):
        return self.offset + self.ndofs

    @property
    def entries(self):
        return self.parent.entries[self.offset:self.last]

    @entries.setter
    def entries(self, values):
        self.parent.entries[self.offset:self.last] = values

    def add(self, dofs, values):
        """Adds values to the local dofs, repeated dofs are summed."""
        np.add.at(self.parent.entries, self.offset + np.asarray(dofs), values)

    def interpolate(self, data, time=0.):
        """Overwrites the block by the interpolation of data."""
        self.entries = interpolate(self.space, data, time)


class FEVector(_AssemblyGuard):
    """
    Coefficient vector of several finite element spaces.

    Args:
      spaces (list): FESpace of every block.
      names (list, optional): Names of the blocks.
    """

    def __init__(self, spaces, names=None):
        if names is None:
            names = [space.name for space in spaces]
        self.blocks = []
        offset = 0
        for space, name in zip(spaces, names):
            self.blocks.append(FEVectorBlock(self, space, offset, name))
            offset += space.ndofs
        self.entries = np.zeros(offset)

    def __repr__(self):
        return f"FEVector({', '.join(block.name for block in self.blocks)}, ndofs={len(self.entries)})"

    def __getitem__(self, i):
        return self.blocks[i]

    def __len__(self):
        return len(self.blocks)

    @property
    def ndofs(self):
        return self.entries.shape[0]

    @property
    def offsets(self):
        return [block.offset for block in self.blocks]

    def fill(self, value):
        self.entries[:] = value

    def copy(self):
        other = FEVector([block.space for block in self.blocks], [block.name for block in self.blocks])
        other.entries[:] = self.entries
        return other


class FEMatrixBlock:
    """
    Block of an FEMatrix between the test space of a row block and the trial space of a column block.
    """

    def __init__(self, parent, row_offset, col_offset, nrows, ncols):
        self.parent = parent
        self.row_offset = row_offset
        self.col_offset = col_offset
        self.nrows = nrows
        self.ncols = ncols

    def __repr__(self):
        return f"FEMatrixBlock(offsets=({self.row_offset}, {self.col_offset}), shape=({self.nrows}, {self.ncols}))"

    def add(self, rows, cols, values):
        """Stages additions at the local rows and columns of this block."""
        self.parent.add(self.row_offset + np.asarray(rows), self.col_offset + np.asarray(cols), values)


class FEMatrix(_AssemblyGuard):
    """
    Sparse block matrix of finite element spaces.

    Args:
      row_spaces (list): FESpace of every row block.
      col_spaces (list, optional): FESpace of every column block, defaults to the row spaces.
    """

    def __init__(self, row_spaces, col_spaces=None):
        if col_spaces is None:
            col_spaces = row_spaces
        self.row_offsets = np.concatenate([[0], np.cumsum([space.ndofs for space in row_spaces])]).astype(int)
        self.col_offsets = np.concatenate([[0], np.cumsum([space.ndofs for space in col_spaces])]).astype(int)
        self.shape = (int(self.row_offsets[-1]), int(self.col_offsets[-1]))
        self._csr = sparse.csr_matrix(self.shape)
        self._staged = []
        self.dirty = False

    def __repr__(self):
        return f"FEMatrix(shape={self.shape}, nnz={self._csr.nnz}, dirty={self.dirty})"

    def __getitem__(self, index):
        i, j = index
        return FEMatrixBlock(self, self.row_offsets[i], self.col_offsets[j],
                             self.row_offsets[i + 1] - self.row_offsets[i], self.col_offsets[j + 1] - self.col_offsets[j])

    def add(self, rows, cols, values):
        """Stages additions at global rows and columns. Visible after flush()."""
        rows, cols, values = np.broadcast_arrays(np.asarray(rows), np.asarray(cols), np.asarray(values, dtype=float))
        self._staged.append((rows.ravel(), cols.ravel(), values.ravel()))
        self.dirty = True

    def add_sparse(self, matrix, factor=1.):
        """Stages the addition of a scipy sparse matrix of the full shape."""
        coo = sparse.coo_matrix(matrix)
        self.add(coo.row, coo.col, factor * coo.data)

    def flush(self):
        """Sums all staged writes into the sparse storage. Keeps the diagonal of square matrices in the pattern."""
        if not self._staged:
            self.dirty = False
            return self
        existing = self._csr.tocoo()
        rows = [existing.row] + [s[0] for s in self._staged]
        cols = [existing.col] + [s[1] for s in self._staged]
        values = [existing.data] + [s[2] for s in self._staged]
        if self.shape[0] == self.shape[1]:
            diagonal = np.arange(self.shape[0])
            rows.append(diagonal)
            cols.append(diagonal)
            values.append(np.zeros(self.shape[0]))
        coo = sparse.coo_matrix((np.concatenate(values), (np.concatenate(rows), np.concatenate(cols))), shape=self.shape)
        self._csr = coo.tocsr()
        self._staged = []
        self.dirty = False
        return self

    @property
    def csr(self):
        """Compressed sparse row storage.

        Raises:
          UnflushedWriteError: If there are staged writes.
        """
        if self.dirty:
            raise UnflushedWriteError("FEMatrix has staged writes, call flush() before reading it.")
        return self._csr

    def fill(self, value=0.):
        """Flushes staged writes and sets all stored entries to value, the sparsity pattern is kept."""
        self.flush()
        self._csr.data[:] = value

    def copy(self):
        other = FEMatrix.__new__(FEMatrix)
        other.row_offsets, other.col_offsets, other.shape = self.row_offsets, self.col_offsets, self.shape
        other._csr = self.csr.copy()
        other._staged = []
        other.dirty = False
        return other
