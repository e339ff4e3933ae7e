"""
label_propagation: suggest bounding-box labels from already-labeled images.

Propagates existing object-detection labels to similar unlabeled images
using whole-image fingerprints (difference hash, intensity histogram),
normalized cross-correlation template matching, and short-range tracking
across ordered frames. Results are held as reviewable suggestions or merged
directly into the committed labels.

Modules:
    engine            PropagationOrchestrator (the three algorithms)
    similarity        SimilarityIndex with persisted hash cache
    template_matcher  Parallel NCC template search
    suggestions       Suggestion lifecycle (add, accept, reject)
    labels            Committed labels and class registry
    hashing           Difference hash + Hamming distance
    histograms        Intensity histograms + FAISS ranking
    cache             Debounced hash cache persistence
    scoring           Match floor and candidate ranking
    geometry          IoU and rect transforms
    catalog           Image dimensions registry
    preprocessing     Image loading and normalization
    progress          Throttled progress reporting
    yolo_io           YOLO label import/export
    config            PropagationConfig
"""

__version__ = "1.0.0"
