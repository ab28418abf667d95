""" photomontage: seamless compositing of candidate images by graph cut

"""

import numpy as np
import cv2
# for graph cut
import maxflow
import multiprocessing as mp # parallel processing


# Global constants
GC_INFINITY = 10 * 1000 * 1000 * 1000.0 # dominates any finite sum of seam costs
EFFECTIVE_HEIGHT = 600
EFFECTIVE_WIDTH = 800
IMPROVEMENT_RATIO = 0.98 # a round must beat the best flow by 2% to be adopted


def norm2(a, b):
    """ squared euclidean distance over the last (channel) axis

    Args:
        a (np.array): pixel value(s), shape (..., C)
        b (np.array): pixel value(s), shape (..., C)

    Returns:
        float or np.array: squared distance, shape (...)
    """
    return np.sum(np.square(np.subtract(a, b)), axis=-1)


class SquaredDifferenceCost:
    """
    color seam cost: how different the two labels look on both sides of the edge

    """

    def __call__(self, a1, a2, b1, b2):
        return norm2(a1, b1) + norm2(a2, b2)


class GradientCost:
    """
    gradient-domain seam cost: change of the local gradient across the seam

    """

    def __call__(self, a1, a2, b1, b2):
        return norm2(np.subtract(a2, a1), np.subtract(b2, b1))


def grid_edges(height, width):
    """ 4-connected neighbor pairs of a height x width grid

    Pixels are visited in raster order; each pixel emits its right link
    then its down link. Boundary rows/columns do not wrap around.

    Args:
        height (int): grid height
        width (int): grid width

    Returns:
        first (np.array): flat index of the first pixel of each pair
        second (np.array): flat index of the second pixel of each pair
    """
    index = np.arange(height * width).reshape(height, width)

    right = np.full((height, width), -1)
    right[:, :-1] = index[:, 1:]
    down = np.full((height, width), -1)
    down[:-1, :] = index[1:, :]

    first = np.repeat(index.ravel(), 2)
    second = np.stack([right.ravel(), down.ravel()], axis=1).ravel()
    keep = second >= 0

    return first[keep], second[keep]


class Photomontage:
    """
    Photomontage composes one image out of several candidates by picking,
    for every pixel, which candidate contributes. The labeling is found with
    alpha-expansion (Boykov, Veksler & Zabih 2001) on a seam cost, as in
    Agarwala et al. 2004 "Interactive Digital Photomontage".

    Each image comes with a uint8 mask; only candidates whose mask is
    non-zero at a pixel may be selected there.

    """

    def __init__(self, images, masks, multiscale=True, cost=None, n_cpu=1,
                 max_rounds=None, effective_size=(EFFECTIVE_HEIGHT, EFFECTIVE_WIDTH),
                 verbose=False):
        # check inputs
        if len(images) == 0:
            raise ValueError('At least one candidate image is required')
        if len(images) != len(masks):
            raise ValueError('Number of images and masks must be the same')

        shape = images[0].shape[:2]
        for image, mask in zip(images, masks):
            if image.shape[:2] != shape or mask.shape[:2] != shape:
                raise ValueError('Images and masks must have the same height and width')
            if image.dtype == np.uint8:
                raise ValueError('Candidate images must not be 8-bit, convert them to float first')
            if mask.dtype != np.uint8:
                raise ValueError('Masks must be 8-bit')
            if mask.ndim != 2:
                raise ValueError('Masks must be single channel')

        self.images = images
        self.masks = masks
        self.multiscale = multiscale
        self.cost = SquaredDifferenceCost() if cost is None else cost
        self.n_cpu = n_cpu
        self.max_rounds = max_rounds
        self.effective_height, self.effective_width = effective_size
        self.verbose = verbose

        self.height, self.width = shape
        self.lsize = len(images)

        # flat working copies: pixels (L, H*W, C), validity (L, H*W)
        self.pixels = np.stack([np.atleast_3d(im).reshape(self.height * self.width, -1)
                                for im in images]).astype(np.float64)
        self.valid = np.stack([m.ravel() != 0 for m in masks])

        uncovered = np.count_nonzero(~self.valid.any(axis=0))
        if uncovered > 0:
            raise ValueError(f'{uncovered} pixels have no valid label in any mask')

        self.edges_a, self.edges_b = grid_edges(self.height, self.width)
        self.history = []

    def dist(self, a1, a2, b1, b2):
        """ seam cost of an edge; a1, a2 under one label, b1, b2 under the other

        The cost is called on batches of pairs, shape (E, C), and must return
        one value per pair or a single scalar shared by all of them.
        """
        return self.cost(a1, a2, b1, b2)

    def _pair_costs(self, node_a, node_b, l_a, l_b):
        """
        seam cost between labels l_a and l_b for every pair node_a - node_b,
        always one value per pair

        """
        px = self.pixels
        costs = self.dist(px[l_a, node_a], px[l_a, node_b], px[l_b, node_a], px[l_b, node_b])

        return np.broadcast_to(np.asarray(costs, dtype=np.float64), node_a.shape)

    def _junction(self, graph, node_a, node_b, weight_ax, weight_xs, weight_xb):
        """
        auxiliary node X of a seam pair: linked to sink, then A->X, then X->B

        """
        node_x = graph.add_nodes(1)[0]
        graph.add_tedge(node_x, 0, weight_xs)
        graph.add_edge(node_a, node_x, weight_ax, weight_ax)
        graph.add_edge(node_x, node_b, weight_xb, weight_xb)

    def set_weights(self, graph, p_a, p_b, l_a, l_b, l_x):
        """ add the weights of the pairs p_a - p_b for the trial label l_x

        Pairs whose pixels share a label get one undirected A-B edge. Pairs on
        a seam get an auxiliary node each, see _junction. Works on a single
        pair or on arrays of pairs.

        Args:
            graph (maxflow.Graph): graph whose first H*W nodes are the pixels
            p_a (tuple): (row, col) of the first pixels, ints or arrays
            p_b (tuple): (row, col) of their neighbors
            l_a (int or np.array): current labels at p_a
            l_b (int or np.array): current labels at p_b
            l_x (int): trial label
        """
        node_a = np.atleast_1d(np.asarray(p_a[0]) * self.width + np.asarray(p_a[1]))
        node_b = np.atleast_1d(np.asarray(p_b[0]) * self.width + np.asarray(p_b[1]))
        l_a = np.broadcast_to(l_a, node_a.shape)
        l_b = np.broadcast_to(l_b, node_a.shape)
        shared = l_a == l_b

        # same label on both sides: plain edges, in one batch
        if np.any(shared):
            a, b = node_a[shared], node_b[shared]
            weights = np.ascontiguousarray(self._pair_costs(a, b, l_a[shared], l_x))
            graph.add_edges(a, b, weights, weights)

        seam = ~shared
        if np.any(seam):
            a, b = node_a[seam], node_b[seam]
            label_a, label_b = l_a[seam], l_b[seam]
            weights_ax = self._pair_costs(a, b, label_a, l_x)
            weights_xs = self._pair_costs(a, b, label_a, label_b)
            weights_xb = self._pair_costs(a, b, l_x, label_b)

            for edge in zip(a.tolist(), b.tolist(), weights_ax.tolist(),
                            weights_xs.tolist(), weights_xb.tolist()):
                self._junction(graph, *edge)

    def single_expansion(self, labeling, alpha):
        """ one alpha-expansion move: let label alpha claim pixels of labeling

        Args:
            labeling (np.array): current labeling, (H, W) int
            alpha (int): trial label

        Returns:
            flow (float): max-flow value of the cut
            expanded (np.array): labeling after the move, (H, W) int32
        """
        labels = labeling.ravel()
        n_pixels = self.height * self.width
        n_edges = self.edges_a.size

        # each pixel has one node, each seam edge may add one more
        g = maxflow.Graph[float](n_pixels + n_edges, 2 * n_edges)
        nodeids = g.add_grid_nodes((self.height, self.width))

        # terminal links
        source_caps = np.where(self.valid[alpha], 0, GC_INFINITY)
        sink_caps = np.where(self.valid[labels, np.arange(n_pixels)], 0, GC_INFINITY)
        g.add_grid_tedges(nodeids, source_caps.reshape(self.height, self.width),
                          sink_caps.reshape(self.height, self.width))

        # neighbor links
        a, b = self.edges_a, self.edges_b
        self.set_weights(g, divmod(a, self.width), divmod(b, self.width), labels[a], labels[b], alpha)

        flow = g.maxflow()

        # source side keeps its label, sink side switches to alpha
        to_alpha = g.get_grid_segments(nodeids)
        expanded = np.where(to_alpha, alpha, labeling).astype(np.int32)

        return flow, expanded

    def _expand_all(self, labeling, pool=None):
        """
        try every label against labeling; returns the candidate labelings
        and their flows, indexed by label

        """
        if pool is None:
            results = [self.single_expansion(labeling, alpha) for alpha in range(self.lsize)]
        else:
            results = pool.starmap(_expand_in_worker,
                                   [(labeling, alpha) for alpha in range(self.lsize)])

        distances = np.array([flow for flow, _ in results])
        labelings = [expanded for _, expanded in results]

        return labelings, distances

    def gradient_descent(self, labeling):
        """ alpha-expansion loop

        Every round tries all labels and adopts the best one, as long as
        its flow beats the best flow so far by IMPROVEMENT_RATIO.

        Args:
            labeling (np.array): initial labeling, updated in place

        Returns:
            labeling (np.array): final labeling
        """
        best_value = np.inf
        self.history = []

        n_cpu = self.n_cpu
        if n_cpu <= 0:
            n_cpu = max(1, mp.cpu_count() - 1)

        pool = mp.Pool(processes=n_cpu, initializer=_init_worker, initargs=(self,)) \
            if n_cpu > 1 and self.lsize > 1 else None
        try:
            rounds = 0
            while True:
                labelings, distances = self._expand_all(labeling, pool)

                min_index = int(np.argmin(distances)) # first index wins ties
                min_value = distances[min_index]
                adopted = min_value < IMPROVEMENT_RATIO * best_value

                if self.verbose:
                    print(f'round {rounds}: label {min_index}, flow {min_value:.4f}, '
                          f'{"adopted" if adopted else "stop"}')

                if not adopted:
                    break

                best_value = min_value
                self.history.append(min_value)
                labeling[...] = labelings[min_index]

                rounds += 1
                if self.max_rounds is not None and rounds >= self.max_rounds:
                    break
        finally:
            if pool is not None:
                pool.close()
                pool.join()

        return labeling

    def assign_labeling(self):
        """ optimal labeling of the full resolution grid

        Large inputs are solved on a downscaled copy and the labeling is
        upsampled with nearest neighbor.

        Returns:
            labeling (np.array): (H, W) int32
        """
        if not self.multiscale or (self.height < self.effective_height and
                                   self.width < self.effective_width):
            labeling = np.zeros((self.height, self.width), dtype=np.int32)
            return self.gradient_descent(labeling)

        level = max(1, min(int(round(self.height / self.effective_height)),
                           int(round(self.width / self.effective_width))))
        size = (self.width // level, self.height // level) # cv2 order: (w, h)

        if self.verbose:
            print(f'multiscale: solving at {size[0]}x{size[1]} (1/{level})')

        images = [cv2.resize(im, size, interpolation=cv2.INTER_AREA) for im in self.images]
        masks = [cv2.resize(m, size, interpolation=cv2.INTER_NEAREST) for m in self.masks]
        coarse = Photomontage(images, masks, multiscale=False, cost=self.cost,
                              n_cpu=self.n_cpu, max_rounds=self.max_rounds,
                              verbose=self.verbose)

        labeling = coarse.assign_labeling()
        self.history = coarse.history

        labeling = cv2.resize(labeling, (self.width, self.height), interpolation=cv2.INTER_NEAREST)

        return self._repair(labeling)

    def _repair(self, labeling):
        """
        reassign pixels whose label is invalid at full resolution
        to the lowest valid label

        """
        labels = labeling.ravel()
        n_pixels = self.height * self.width
        invalid = ~self.valid[labels, np.arange(n_pixels)]
        if np.any(invalid):
            fallback = np.argmax(self.valid, axis=0) # first True per pixel
            labels = np.where(invalid, fallback, labels)

        return labels.reshape(self.height, self.width).astype(np.int32)

    def compose(self, labeling):
        """
        copy every pixel from the candidate its label points to

        """
        rows, cols = np.indices((self.height, self.width))
        stack = np.stack(self.images)

        return stack[labeling, rows, cols]

    def assign_res_image(self):
        """ composite image: every pixel copied from its labeled candidate

        Returns:
            np.array: same shape and dtype as the candidate images
        """
        return self.compose(self.assign_labeling())

    def labeling_cost(self, labeling):
        """ energy of a labeling

        Args:
            labeling (np.array): (H, W) int

        Returns:
            float: GC_INFINITY per invalid pixel plus the seam cost of every
                neighbor pair with different labels
        """
        labels = labeling.ravel()
        n_pixels = self.height * self.width
        invalid = np.count_nonzero(~self.valid[labels, np.arange(n_pixels)])

        a, b = self.edges_a, self.edges_b
        label_a, label_b = labels[a], labels[b]
        seam = label_a != label_b
        if not np.any(seam):
            return invalid * GC_INFINITY

        seam_cost = np.sum(self._pair_costs(a[seam], b[seam], label_a[seam], label_b[seam]))

        return invalid * GC_INFINITY + float(seam_cost)


# worker side of the per-label pool
_worker_montage = None

def _init_worker(montage):
    global _worker_montage
    _worker_montage = montage

def _expand_in_worker(labeling, alpha):
    return _worker_montage.single_expansion(labeling, alpha)


def run_photomontage(images, masks, **kwargs):
    """ composite images with Photomontage in one call

    Args:
        images (list): float candidate images
        masks (list): uint8 validity masks
        kwargs: forwarded to Photomontage

    Returns:
        np.array: composite image
    """
    montage = Photomontage(images, masks, **kwargs)

    return montage.assign_res_image()


# Cite:
# [BOYKOV01] Boykov, Y., Veksler, O., & Zabih, R. (2001). Fast approximate energy minimization via graph cuts. IEEE Transactions on Pattern Analysis and Machine Intelligence, 23(11), 1222-1239.
# [AGARWALA04] Agarwala, A., et al. (2004). Interactive digital photomontage. ACM Transactions on Graphics, 23(3), 294-302.
