from lbl_net.optimizer.adagrad import AdaGrad

__all__ = ["AdaGrad"]
