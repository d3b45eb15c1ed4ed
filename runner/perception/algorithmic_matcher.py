# runner/perception/algorithmic_matcher.py
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Tuple

import cv2
import numpy as np
from PIL import Image

from runner.config import LocatorSettings
from runner.logger import elapsed_ms, log

from .geometry import BoundingBox, average_box, overlap_groups
from .imaging import is_uniform, to_cv_gray

ORB_FEATURES = 1500
LOWE_RATIO = 0.75
MIN_GOOD_MATCHES = 8
RANSAC_REPROJECTION_THRESHOLD = 5.0
MAX_TEMPLATE_HITS = 1000


class AlgorithmicMatcher:
    """
    Finds a reference element image inside a screenshot without the model:
    ORB keypoints + homography, and normalized cross-correlation template matching.
    """

    def __init__(self, settings: LocatorSettings):
        self.settings = settings

    def find_with_features(self, screenshot: Image.Image, reference: Image.Image) -> List[BoundingBox]:
        scene = to_cv_gray(screenshot)
        template = to_cv_gray(reference)
        orb = cv2.ORB_create(nfeatures=ORB_FEATURES)
        kp_t, des_t = orb.detectAndCompute(template, None)
        kp_s, des_s = orb.detectAndCompute(scene, None)
        if des_t is None or des_s is None or len(kp_t) < 2 or len(kp_s) < 2:
            log("DEBUG", "orb_insufficient_keypoints", "Not enough keypoints for feature matching")
            return []

        bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        good = []
        for pair in bf.knnMatch(des_t, des_s, k=2):
            if len(pair) == 2 and pair[0].distance < LOWE_RATIO * pair[1].distance:
                good.append(pair[0])
        if len(good) < MIN_GOOD_MATCHES:
            log("DEBUG", "orb_too_few_matches", f"ORB: {len(good)} good matches")
            return []

        src_pts = np.float32([kp_t[m.queryIdx].pt for m in good]).reshape(-1, 1, 2)
        dst_pts = np.float32([kp_s[m.trainIdx].pt for m in good]).reshape(-1, 1, 2)
        homography, _ = cv2.findHomography(src_pts, dst_pts, cv2.RANSAC, RANSAC_REPROJECTION_THRESHOLD)
        if homography is None:
            return []

        h, w = template.shape[:2]
        corners = np.float32([[0, 0], [w, 0], [w, h], [0, h]]).reshape(-1, 1, 2)
        projected = cv2.perspectiveTransform(corners, homography).reshape(-1, 2)
        x1, y1 = np.floor(projected.min(axis=0)).astype(int)
        x2, y2 = np.ceil(projected.max(axis=0)).astype(int)
        if x2 <= x1 or y2 <= y1:
            return []
        box = BoundingBox(x1=int(x1), y1=int(y1), x2=int(x2), y2=int(y2)).clamp(screenshot.width, screenshot.height)
        if box is None or not self._has_expected_size(box, w, h):
            log("DEBUG", "orb_box_rejected", "Projected box deviates from the reference size",
                box=box.as_tuple() if box else None, reference=(w, h))
            return []
        return [box]

    def _has_expected_size(self, box: BoundingBox, width: int, height: int) -> bool:
        ratio = self.settings.dimension_deviation_ratio
        return abs(box.width - width) / width <= ratio and abs(box.height - height) / height <= ratio

    def find_with_template(self, screenshot: Image.Image, reference: Image.Image) -> List[BoundingBox]:
        scene = to_cv_gray(screenshot)
        template = to_cv_gray(reference)
        th, tw = template.shape[:2]
        sh, sw = scene.shape[:2]
        if th > sh or tw > sw:
            log("DEBUG", "template_too_large", "Reference image is larger than the screenshot")
            return []
        if is_uniform(template):
            # Correlation is undefined for a constant template
            return []

        scores = cv2.matchTemplate(scene, template, cv2.TM_CCOEFF_NORMED)
        ys, xs = np.where(scores >= self.settings.visual_similarity_threshold)
        if len(xs) == 0:
            return []
        hits = sorted(zip(scores[ys, xs], xs, ys), reverse=True)[:MAX_TEMPLATE_HITS]
        boxes = [BoundingBox.from_xywh(int(x), int(y), tw, th) for _, x, y in hits]
        best = [float(score) for score, _, _ in hits]

        merged = []
        for group in overlap_groups(boxes):
            merged.append((max(best[i] for i in group), average_box([boxes[i] for i in group])))
        merged.sort(key=lambda item: item[0], reverse=True)
        return [box for _, box in merged[:self.settings.top_visual_matches]]

    def match(self, screenshot: Image.Image, reference: Image.Image) -> Tuple[List[BoundingBox], List[BoundingBox]]:
        """Runs both strategies concurrently; returns (feature boxes, template boxes)."""
        start = time.time()
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="matcher") as pool:
            features = pool.submit(self.find_with_features, screenshot, reference)
            templates = pool.submit(self.find_with_template, screenshot, reference)
            result = features.result(), templates.result()
        log("INFO", "algorithmic_match", "Algorithmic matching finished", feature_boxes=len(result[0]),
            template_boxes=len(result[1]), duration_ms=elapsed_ms(start, time.time()))
        return result
