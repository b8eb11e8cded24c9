"""
Supervised demultiplexing of hashtag multiplexed single cell data with SNPs:

1. High-confidence calls
    - fit a two-component (background/signal) mixture model to the counts
        of each hashtag independently
    - call cells singlets, doublets, negatives or uncertain
    - singlets with signal posterior >= pacpt (by default, 0.95)
        are trusted and used for training

2. SNP matrix
    - add per cell SNP counts (e.g. from VarTrix run on SNPs
        within commonly expressed genes, see ``pp.common_genes``)
    - keep SNPs with reads in at least thresh (by default, 0.95) of cells

3. Doublet simulation
    - for every pair of groups sum SNP profiles of randomly drawn trusted cells

4. Reassignment
    - train kNN classifier (by default, k=5, euclidean distance over raw counts)
        on trusted singlets and simulated doublets
    - predict group of every cell
"""

from . import preprocessing as pp
from . import tools as tl
from . import datasets
from ._utils import DegenerateFitError, GaussianMixtureModel, MixtureModel
