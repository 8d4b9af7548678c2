"""Deploy task queue, wake signal, log sink and the single-flight dispatcher.

One dispatcher owns one shared working copy, so at most one task may be
``deploying`` or ``deployed`` at a time. The store enforces it: the
exclusivity check and the claim of the oldest pending task run inside one
write-locked transaction, and the dispatcher's own status writes are
compare-and-set on ``deploying`` so an operator's manual change wins.
"""
