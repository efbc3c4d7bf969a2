from .crop import Crop
from .downsample import Downsample, RandomDownsample, grid_average, random_decimate, voxel_keys
from .segmentation import PlaneFit, PlaneSegmentation, fit_plane_svd, segment_plane
