"""
ImageNet-style image repository.

Layout of a repository directory::

    <root>/synset_wordnet.txt          one "<synset id> <description>" per line
    <root>/Images/<synset id>/*.jpg    images of each category
    <root>/Annotation/<synset id>/*.xml  Pascal VOC boxes, named like the image

Categories ("synsets") can be listed, looked up by id and searched by a
free-text phrase. Image sequences are lazy and restartable: iterating a
``SynsetImageIterator`` or ``MixedImageIterator`` again starts from the
beginning.

Author: MixDet Toolkit Team
Date: October 2026
"""

import logging
import re
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from ..core.geometry import Rectangle
from .annotations import Scene
from .images import ImageData

logger = logging.getLogger(__name__)

IMAGE_DIR = 'Images'
ANNOTATION_DIR = 'Annotation'
SYNSET_LIST_FILE = 'synset_wordnet.txt'
IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.bmp')


class SynsetImage:
    """One image of a synset, loaded on demand."""

    def __init__(self, repo_directory: Path, synset_id: str, filename: str, image_path: Path):
        self.repo_directory = repo_directory
        self.synset_id = synset_id
        self.filename = filename
        self.image_path = image_path
        self.bboxes: List[Rectangle] = []
        self._image: Optional[ImageData] = None

    def get_image(self) -> ImageData:
        if self._image is None:
            self._image = ImageData.from_file(self.image_path)
        return self._image

    def release(self) -> None:
        self._image = None

    @property
    def annotation_path(self) -> Path:
        return self.repo_directory / ANNOTATION_DIR / self.synset_id / f"{self.filename}.xml"

    def load_bounding_boxes(self) -> bool:
        """
        Load the annotated boxes of this image into ``bboxes``.

        Boxes are scaled from the annotation coordinate space into image space
        and clipped to the image.

        Returns:
            ``True`` if at least one valid box was loaded
        """
        self.bboxes = []
        if not self.annotation_path.exists():
            return False
        scene = Scene.from_file(self.annotation_path)
        if scene.empty():
            return False
        img = self.get_image()
        if img.empty():
            return False
        scale = img.width / scene.width
        for obj in scene.objects:
            bbox = obj.bndbox.scaled(scale).clip(img.width, img.height)
            if not bbox.empty():
                self.bboxes.append(bbox)
        return len(self.bboxes) > 0

    def samples_from_bounding_boxes(self) -> List[ImageData]:
        """Crop every annotated object out of the image."""
        if not self.bboxes and not self.load_bounding_boxes():
            return []
        img = self.get_image()
        crops = [img.crop(bbox) for bbox in self.bboxes]
        return [c for c in crops if not c.empty()]

    def extract(self, out_directory: Union[str, Path]) -> bool:
        """Write the image as ``<out_directory>/<filename>.jpg``."""
        img = self.get_image()
        if img.empty():
            return False
        return img.save(Path(out_directory) / f"{self.filename}.jpg")

    def __repr__(self) -> str:
        return f"SynsetImage({self.synset_id}/{self.filename})"


class SynsetImageIterator:
    """
    Restartable sequence over the images of one synset.

    Args:
        synset: Synset to enumerate
        with_boxes_only: Skip images that have no annotation file
    """

    def __init__(self, synset: 'Synset', with_boxes_only: bool = False):
        self.synset = synset
        self.with_boxes_only = with_boxes_only
        self.pos = 0

    def __iter__(self) -> Iterator[SynsetImage]:
        self.pos = 0
        for image_path in self.synset.image_paths():
            simg = SynsetImage(self.synset.repo_directory, self.synset.id, image_path.stem, image_path)
            if self.with_boxes_only and not simg.annotation_path.exists():
                continue
            self.pos += 1
            yield simg


class Synset:
    """A named image category of the repository."""

    def __init__(self, repo_directory: Path, synset_id: str, description: str):
        self.repo_directory = repo_directory
        self.id = synset_id
        self.description = description

    def image_paths(self) -> List[Path]:
        directory = self.repo_directory / IMAGE_DIR / self.id
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.iterdir()
                      if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)

    @property
    def num_images(self) -> int:
        return len(self.image_paths())

    def iter_images(self, with_boxes_only: bool = False) -> SynsetImageIterator:
        return SynsetImageIterator(self, with_boxes_only)

    def __repr__(self) -> str:
        return f"Synset({self.id!r}, {self.description!r})"


class MixedImageIterator:
    """
    Restartable round-robin sequence over the images of all synsets.

    Takes up to ``per_synset`` consecutive images from each synset in turn,
    then continues with the next chunk of every synset until all are exhausted.

    Args:
        repo: Image repository
        per_synset: Interleaving cap per synset and round
        exclude: Synset ids to leave out
    """

    def __init__(self, repo: 'ImageRepository', per_synset: int = 1, exclude: Optional[List[str]] = None):
        self.repo = repo
        self.per_synset = max(1, int(per_synset))
        self.exclude = set(exclude or [])
        self.pos = 0

    def __iter__(self) -> Iterator[SynsetImage]:
        self.pos = 0
        synsets = [s for s in self.repo.list_synsets() if s.id not in self.exclude]
        paths = {s.id: s.image_paths() for s in synsets}
        offset = 0
        while True:
            produced = False
            for synset in synsets:
                chunk = paths[synset.id][offset:offset + self.per_synset]
                for image_path in chunk:
                    produced = True
                    self.pos += 1
                    yield SynsetImage(self.repo.repo_directory, synset.id, image_path.stem, image_path)
            if not produced:
                return
            offset += self.per_synset

    def images(self, limit: int) -> Iterator[ImageData]:
        """Yield up to ``limit`` decodable images."""
        count = 0
        for simg in self:
            if count >= limit:
                return
            img = simg.get_image()
            simg.release()
            if img.empty():
                continue
            count += 1
            yield img


class ImageRepository:
    """
    Access to an ImageNet-style image repository.

    Args:
        repo_directory: Root directory of the repository
    """

    def __init__(self, repo_directory: Union[str, Path]):
        self.repo_directory = Path(repo_directory) if repo_directory else Path()
        self._synsets: Optional[List[Synset]] = None

    @staticmethod
    def type() -> str:
        return 'ImageNet'

    @staticmethod
    def has_repository_structure(repo_directory: Union[str, Path, None]) -> Tuple[bool, str]:
        """
        Check whether a directory looks like an image repository.

        Returns:
            Tuple of (valid, diagnostic message)
        """
        if not repo_directory:
            return False, 'No repository directory given.'
        root = Path(repo_directory)
        if not root.is_dir():
            return False, f'Repository directory {root} does not exist.'
        if not (root / SYNSET_LIST_FILE).is_file():
            return False, f'Synset list file {SYNSET_LIST_FILE} not found.'
        if not (root / IMAGE_DIR).is_dir():
            return False, f'Image directory {IMAGE_DIR} not found.'
        if not (root / ANNOTATION_DIR).is_dir():
            return False, f'Annotation directory {ANNOTATION_DIR} not found.'
        return True, ''

    def list_synsets(self) -> List[Synset]:
        if self._synsets is None:
            synsets = []
            list_file = self.repo_directory / SYNSET_LIST_FILE
            try:
                with open(list_file, 'r', encoding='utf-8') as f:
                    for line in f:
                        line = line.strip()
                        if not line or line.startswith('#'):
                            continue
                        parts = line.split(None, 1)
                        description = parts[1].strip() if len(parts) > 1 else ''
                        synsets.append(Synset(self.repo_directory, parts[0], description))
            except OSError as e:
                logger.warning(f"Could not read synset list {list_file}: {e}")
            self._synsets = synsets
        return list(self._synsets)

    @property
    def num_synsets(self) -> int:
        return len(self.list_synsets())

    def get_synset(self, synset_id: str) -> Optional[Synset]:
        for synset in self.list_synsets():
            if synset.id == synset_id:
                return synset
        return None

    def search_synsets(self, phrase: str, limit: int = 0) -> List[Tuple[Synset, float]]:
        """
        Search synsets by a free-text phrase.

        A description lemma equal to the whole phrase scores 1. Otherwise every
        phrase word found among the description words counts 1, every word that
        only prefixes a description word counts 0.5, normalised by the number
        of phrase words.

        Args:
            phrase: Search phrase
            limit: Maximum number of results (0 for all)

        Returns:
            List of (synset, score) sorted by descending score
        """
        words = [w for w in re.split(r'\W+', phrase.lower()) if w]
        if not words:
            return []
        target = ' '.join(words)
        results = []
        for synset in self.list_synsets():
            lemmas = [' '.join(w for w in re.split(r'\W+', lemma.lower()) if w)
                      for lemma in synset.description.split(',')]
            if target in lemmas:
                score = 1.0
            else:
                desc_words = set(w for w in re.split(r'\W+', synset.description.lower()) if w)
                matched = 0.0
                for word in words:
                    if word in desc_words:
                        matched += 1.0
                    elif any(d.startswith(word) for d in desc_words):
                        matched += 0.5
                score = 0.9 * matched / len(words)
            if score > 0:
                results.append((synset, score))
        results.sort(key=lambda r: (-r[1], r[0].id))
        return results[:limit] if limit > 0 else results

    def get_mixed_iterator(self, per_synset: int = 1, exclude: Optional[List[str]] = None) -> MixedImageIterator:
        return MixedImageIterator(self, per_synset, exclude)
