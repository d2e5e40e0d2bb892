from lbl_net.regulariser.l2 import L2Regulariser

__all__ = ["L2Regulariser"]
