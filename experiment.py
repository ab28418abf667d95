"""
This is the main experiment script

"""

import cv2
import os
import glob
import numpy as np
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import photomontage as pm


DATASET_FOLDER = os.path.join(os.getcwd(),"datasets") #Path with image_*.png / mask_*.png pairs
OUTPUT_FOLDER = os.path.join(os.getcwd(),"output") #Path to save output images


def make_synthetic_candidates(height=120, width=160, n_labels=3, seed=0):
    """ overlapping float candidates with masks, for running without data

    Every candidate is the same smooth scene with its own brightness offset
    and noise; candidate i is valid on a vertical band that overlaps its
    neighbors, so seams have to be placed inside the overlaps.

    Args:
        height (int): image height
        width (int): image width
        n_labels (int): number of candidates
        seed (int): random seed

    Returns:
        images (list): float32 images, (H, W, 3)
        masks (list): uint8 masks, (H, W)
    """
    rng = np.random.default_rng(seed)

    rows, cols = np.indices((height, width), dtype=np.float32)
    scene = np.stack([np.sin(cols / 15.0), np.cos(rows / 11.0), np.sin((rows + cols) / 23.0)], axis=-1)
    scene = (scene + 1) / 2

    band = width / n_labels
    overlap = band / 3

    images = []
    masks = []
    for i in range(n_labels):
        offset = 0.15 * (i - (n_labels - 1) / 2)
        noise = rng.normal(0, 0.02, size=scene.shape).astype(np.float32)
        images.append(np.clip(scene + offset + noise, 0, 1).astype(np.float32))

        mask = np.zeros((height, width), dtype=np.uint8)
        left = int(max(0, i * band - overlap))
        right = int(min(width, (i + 1) * band + overlap))
        mask[:, left:right] = 255
        masks.append(mask)

    return images, masks


def load_candidates(folder):
    """ read image_*.png / mask_*.png pairs from folder

    Returns:
        images (list): float32 images scaled to [0, 1]
        masks (list): uint8 masks
    """
    image_paths = sorted(glob.glob(os.path.join(folder, 'image_*.png')))
    mask_paths = sorted(glob.glob(os.path.join(folder, 'mask_*.png')))
    if len(image_paths) == 0:
        raise ValueError(f'No image_*.png found in {folder}')
    if len(image_paths) != len(mask_paths):
        raise ValueError('Every image needs a mask')

    images = [cv2.imread(p, cv2.IMREAD_COLOR).astype(np.float32) / 255 for p in image_paths]
    masks = [cv2.imread(p, cv2.IMREAD_GRAYSCALE) for p in mask_paths]

    return images, masks


def labeling_to_color(labeling, n_labels):
    """
    color code a labeling with a colormap, one color per label

    """
    scale = 255 / max(1, n_labels - 1)
    labeling_u8 = (labeling * scale).astype(np.uint8)

    return cv2.applyColorMap(labeling_u8, cv2.COLORMAP_PARULA)


def save_results(name, images, composite, labeling):
    """
    write composite, label map and a side by side figure to OUTPUT_FOLDER

    """
    if not os.path.exists(OUTPUT_FOLDER):
        os.makedirs(OUTPUT_FOLDER)

    composite_u8 = cv2.normalize(composite, None, alpha=0, beta=255, norm_type=cv2.NORM_MINMAX, dtype=cv2.CV_8U)
    label_color = labeling_to_color(labeling, len(images))

    cv2.imwrite(os.path.join(OUTPUT_FOLDER, f'{name}_composite.png'), composite_u8)
    cv2.imwrite(os.path.join(OUTPUT_FOLDER, f'{name}_labels.png'), label_color)

    # candidates, composite and labels in one figure
    fig, axes = plt.subplots(1, len(images) + 2, figsize=(3 * (len(images) + 2), 3))
    for i, im in enumerate(images):
        axes[i].imshow(cv2.cvtColor(np.clip(im, 0, 1).astype(np.float32), cv2.COLOR_BGR2RGB))
        axes[i].set_title(f'candidate {i}')
    axes[-2].imshow(cv2.cvtColor(composite_u8, cv2.COLOR_BGR2RGB))
    axes[-2].set_title('composite')
    axes[-1].imshow(labeling, cmap='viridis', interpolation='nearest')
    axes[-1].set_title('labels')
    for ax in axes:
        ax.axis('off')
    fig.tight_layout()
    fig.savefig(os.path.join(OUTPUT_FOLDER, f'{name}_overview.png'))
    plt.close(fig)


def photomontage_demo():
    """
    composite the synthetic candidates, save composite and labels as png
    report the seam energy of the result

    """
    print('Running: photomontage_demo')
    images, masks = make_synthetic_candidates()

    # time the graph cut algorithm
    start = cv2.getTickCount()  # start time
    montage = pm.Photomontage(images, masks, verbose=True)
    labeling = montage.assign_labeling()
    end = cv2.getTickCount()  # end time
    time = (end - start) / cv2.getTickFrequency()  # time in seconds
    print('Time: ', time)

    composite = montage.compose(labeling)

    print(f"labels used: {np.unique(labeling).tolist()}")
    print(f"seam energy: {montage.labeling_cost(labeling):.4f}")
    print(f"flow per adopted round: {[round(float(f), 4) for f in montage.history]}")

    save_results('PhotomontageDemo', images, composite, labeling)
    print('Done: photomontage_demo')


def folder_demo(folder=DATASET_FOLDER):
    """
    composite candidates read from folder

    """
    print(f'Running: folder_demo on {folder}')
    images, masks = load_candidates(folder)

    montage = pm.Photomontage(images, masks, n_cpu=-1, verbose=True)
    labeling = montage.assign_labeling()

    composite = montage.compose(labeling)

    save_results(os.path.basename(os.path.normpath(folder)), images, composite, labeling)
    print('Done: folder_demo')


if __name__ == "__main__":
    photomontage_demo()
    # folder_demo() # needs image_*.png / mask_*.png pairs in DATASET_FOLDER
