"""
Concurrent top-down traversal of the region tree.

A pass over the tree is run by ``n_threads - 1`` pool threads plus the
calling thread. They share a FIFO of node ids, seeded with the top-level
nodes. Processing an internal node computes something for both of its
children and then pushes them; visiting a leaf increments a counter. The
pass is over once every leaf has been visited.

Workers wait on a condition variable that is notified on every push and
on every leaf visit, so a worker that finds the queue empty only stops
when the leaf count is reached, never because another worker has not
pushed its children yet.

Results of a pass are written to a ``PassOutput`` buffer and merged into
the tree when the pass is complete.
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor

from .errors import StateError
from .utils import kernel_entropy
from .tracing import trace

logger = logging.getLogger(__name__)


class TreeWorkQueue:
    """
    FIFO of node ids with leaf-count based termination.

    Parameters
    ----------
    leaf_target : int
        Number of leaf visits after which the pass is complete
    """

    def __init__(self, leaf_target):
        self.leaf_target = leaf_target
        self.visited_leaves = 0
        self._items = deque()
        self._active = 0
        self._error = None
        self._cond = threading.Condition()

    def put(self, *node_ids):
        with self._cond:
            self._items.extend(node_ids)
            self._cond.notify_all()

    def get(self):
        """
        Block until a node id is available and return it.

        Returns None once the pass is complete or has been aborted.
        """
        with self._cond:
            while True:
                if self._error is not None:
                    return None
                if self._items:
                    self._active += 1
                    return self._items.popleft()
                if self.visited_leaves >= self.leaf_target:
                    return None
                if self._active == 0:
                    # nothing queued, nobody working, leaves missing
                    self._error = StateError(
                        f"Tree walk stalled after {self.visited_leaves} of "
                        f"{self.leaf_target} leaves")
                    self._cond.notify_all()
                    return None
                self._cond.wait()

    def task_done(self):
        with self._cond:
            self._active -= 1
            self._cond.notify_all()

    def leaf_visited(self):
        with self._cond:
            self.visited_leaves += 1
            self._cond.notify_all()

    def abort(self, error):
        """Stop the pass; waiting workers return and ``error`` is re-raised by the walker."""
        with self._cond:
            if self._error is None:
                self._error = error
            self._cond.notify_all()

    @property
    def error(self):
        with self._cond:
            return self._error


def run_workers(worker, n_threads):
    """
    Run ``worker`` on ``n_threads - 1`` pool threads and the calling thread.

    Waits for all of them and re-raises the first exception.
    """
    n_workers = max(0, n_threads - 1)
    errors = []

    with ThreadPoolExecutor(max_workers=max(1, n_workers)) as executor:
        futures = [executor.submit(worker) for _ in range(n_workers)]

        # let the calling thread do some work too
        try:
            worker()
        except Exception as exc:
            errors.append(exc)

        for future in futures:
            exc = future.exception()
            if exc is not None:
                errors.append(exc)

    if errors:
        raise errors[0]


class PassOutput:
    """
    Kernels written during one pass, merged into the tree afterwards.

    Reading a node's kernel returns the value written in this pass if
    there is one, and the value stored in the tree otherwise. All access
    goes through one lock, which orders a parent's write before its
    children's reads.
    """

    def __init__(self, tree):
        self._tree = tree
        self._psfs = {}
        self._entropies = {}
        self._lock = threading.Lock()

    def store(self, node_id, psf, entropy=None):
        if entropy is None:
            entropy = kernel_entropy(psf)
        with self._lock:
            self._psfs[node_id] = psf
            self._entropies[node_id] = entropy

    def psf(self, node_id):
        with self._lock:
            if node_id in self._psfs:
                return self._psfs[node_id]
        return self._tree[node_id].psf

    def entropy(self, node_id):
        with self._lock:
            if node_id in self._entropies:
                return self._entropies[node_id]
        return self._tree[node_id].entropy

    def __contains__(self, node_id):
        with self._lock:
            return node_id in self._psfs

    def __len__(self):
        with self._lock:
            return len(self._psfs)

    def commit(self):
        """Write all buffered kernels and entropies into the tree."""
        with self._lock:
            for node_id, psf in self._psfs.items():
                self._tree[node_id].psf = psf
                self._tree[node_id].entropy = self._entropies[node_id]


class ConcurrentTreeWalker:
    """
    Runs top-down passes over a region tree.

    Parameters
    ----------
    tree : RegionTree
    n_threads : int
        Total number of threads including the calling one
    """

    def __init__(self, tree, n_threads=1):
        self.tree = tree
        self.n_threads = max(1, int(n_threads))

    def walk(self, process_node, name="pass"):
        """
        Visit every node of the tree, parents before children.

        Parameters
        ----------
        process_node : callable
            ``process_node(node_id, output)`` is called for each internal
            node and must store results for both children in ``output``
        name : str
            Name of the pass for logging and tracing

        Returns
        -------
        output : PassOutput
            The already committed output of the pass
        """
        tree = self.tree
        queue = TreeWorkQueue(len(tree.leaf_ids))
        output = PassOutput(tree)
        queue.put(*tree.top_level_ids)

        def worker():
            while True:
                node_id = queue.get()
                if node_id is None:
                    return
                node = tree[node_id]
                try:
                    if node.is_leaf:
                        queue.leaf_visited()
                    else:
                        with trace(name + "_node"):
                            process_node(node_id, output)
                        # children are pushed only after their kernels are stored
                        queue.put(*node.children)
                except BaseException as exc:
                    queue.abort(exc)
                    raise
                finally:
                    queue.task_done()

        logger.info("Starting %s with %d thread(s)", name, self.n_threads)
        with trace(name):
            try:
                run_workers(worker, self.n_threads)
            except Exception:
                logger.error("%s aborted", name)
                raise

        if queue.error is not None:
            raise queue.error

        output.commit()
        logger.info("Finished %s, visited %d leaves", name, queue.visited_leaves)
        return output
